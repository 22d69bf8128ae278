# cfti_units.py
# Example jig: a bench power supply, a serial console daemon and a handful of
# board checks. Run with `cfti run` or `cfti serve`.
from __future__ import annotations
from cfti import test, daemon, scenario, jig, logger, unit_set


def units():
    return unit_set(
        jig("bench", title="Bench 1", default_scenario="smoke"),

        # Power first; everything else needs it
        test(
            "power-on",
            "echo 'rail 3v3 ok'",
            title="Power on",
            provides="power",
            exec_stop_fail="echo 'power-off (failure)'",
            timeout=30,
        ),

        # Serial console stays up for the whole scenario
        daemon(
            "console",
            "python3 -u -c \"import time; print('console: READY'); time.sleep(3600)\"",
            ready_text=r"READY$",
            requires="power",
            check="true",
            check_interval=5,
            timeout=20,
        ),

        test("adc", "echo 'adc within 2%'", requires="power", suggests="calibrate"),
        test("calibrate", "echo 'calibrated'", requires="power"),
        test("uart", "echo 'loopback ok'", requires="console"),
        test("flash", "sleep 1", requires="power", timeout=120),

        scenario(
            "smoke",
            "adc uart",
            title="Smoke test",
            timeout=300,
            exec_stop_failure="echo 'smoke failed, leaving board powered for inspection'",
        ),
        scenario(
            "full",
            ["adc", "uart", "flash"],
            title="Full production test",
            exec_start="echo 'scanning serial number'",
            timeout=900,
        ),
        # Boards that come pre-flashed from the vendor
        scenario("preflashed", "flash uart", assume="flash"),

        logger("tsv-file", "python3 -u -c \"import sys; [open('cfti.log', 'a').write(l) for l in sys.stdin]\""),
    )
