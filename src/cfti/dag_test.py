from __future__ import annotations

import pytest

from cfti import dsl
from cfti.dag import build_graph, build_provider_map
from cfti.errors import AmbiguousProvider, CycleDetected, IncompatibleJig, UnknownUnit


def t(name: str, **kw):
    return dsl.test(name, "true", **kw)


def _assert_topological(graph) -> None:
    pos = {n: i for i, n in enumerate(graph.order)}
    for node in graph.order:
        for dep in graph.requires[node] + graph.suggests[node]:
            assert pos[dep] < pos[node], f"{dep} must precede {node}"


def test_chain_is_ordered_dependencies_first() -> None:
    tests = [t("a", requires="b"), t("b", requires="c"), t("c")]
    graph = build_graph(tests, dsl.scenario("s", "a"))

    assert graph.order == ("c", "b", "a")
    _assert_topological(graph)


def test_dependency_inserted_before_first_dependent() -> None:
    tests = [t("x"), t("y", requires="z"), t("z"), t("w", requires="z")]
    graph = build_graph(tests, dsl.scenario("s", "x y w"))

    assert graph.order == ("x", "z", "y", "w")


def test_requires_then_suggests_in_declared_order() -> None:
    tests = [t("top", requires="r1 r2", suggests="s1"), t("r1"), t("r2"), t("s1")]
    graph = build_graph(tests, dsl.scenario("s", "top"))

    assert graph.order == ("r1", "r2", "s1", "top")
    assert graph.requires["top"] == ("r1", "r2")
    assert graph.suggests["top"] == ("s1",)


def test_unselected_tests_are_not_in_graph() -> None:
    graph = build_graph([t("a"), t("unused")], dsl.scenario("s", "a"))
    assert "unused" not in graph
    assert len(graph) == 1


def test_suffix_elision() -> None:
    tests = [t("a", requires=["b.test"]), t("b")]
    graph = build_graph(tests, dsl.scenario("s", ["a.test"]))
    assert graph.order == ("b", "a")


def test_alias_resolves_to_single_provider() -> None:
    tests = [t("app", requires="network"), t("wifi", provides="network")]
    graph = build_graph(tests, dsl.scenario("s", "app"))

    assert graph.order == ("wifi", "app")
    assert graph.requires["app"] == ("wifi",)


def test_ambiguous_alias_is_rejected() -> None:
    tests = [t("app", requires="network"), t("wifi", provides="network"), t("eth", provides="network")]

    with pytest.raises(AmbiguousProvider) as exc:
        build_graph(tests, dsl.scenario("s", "app"))

    assert exc.value.alias == "network"
    assert exc.value.candidates == ["eth", "wifi"]


def test_explicit_selection_disambiguates_alias() -> None:
    tests = [t("app", requires="network"), t("wifi", provides="network"), t("eth", provides="network")]
    graph = build_graph(tests, dsl.scenario("s", "eth app"))

    assert graph.requires["app"] == ("eth",)
    assert "wifi" not in graph


def test_jig_filters_providers() -> None:
    tests = [
        t("app", requires="network"),
        t("wifi", provides="network", jigs="jig-a"),
        t("eth", provides="network", jigs="jig-b"),
    ]
    graph = build_graph(tests, dsl.scenario("s", "app"), jig="jig-b")
    assert graph.requires["app"] == ("eth",)


def test_incompatible_jig() -> None:
    tests = [t("app", requires="radio"), t("radio", jigs="jig-a")]

    with pytest.raises(IncompatibleJig) as exc:
        build_graph(tests, dsl.scenario("s", "app"), jig="jig-b")

    assert exc.value.test == "radio"
    assert exc.value.jig == "jig-b"


def test_unknown_requirement() -> None:
    with pytest.raises(UnknownUnit) as exc:
        build_graph([t("a", requires="ghost")], dsl.scenario("s", "a"))
    assert exc.value.name == "ghost"


def test_unknown_suggestion_is_dropped() -> None:
    graph = build_graph([t("a", suggests="ghost")], dsl.scenario("s", "a"))
    assert graph.order == ("a",)
    assert graph.suggests["a"] == ()


def test_hard_cycle_reports_path() -> None:
    tests = [t("a", requires="b"), t("b", requires="c"), t("c", requires="a")]

    with pytest.raises(CycleDetected) as exc:
        build_graph(tests, dsl.scenario("s", "a"))

    assert exc.value.path == ["a", "b", "c", "a"]


def test_soft_cycle_is_fatal_too() -> None:
    tests = [t("a", suggests="b"), t("b", requires="a")]
    with pytest.raises(CycleDetected):
        build_graph(tests, dsl.scenario("s", "a"))


def test_assumed_tests_are_not_expanded() -> None:
    tests = [t("flash", requires="power"), t("power"), t("check", requires="flash")]
    graph = build_graph(tests, dsl.scenario("s", "check", assume="flash"))

    assert "power" not in graph
    assert graph.assumed == frozenset({"flash"})
    assert graph.executable() == ["check"]
    assert graph.order[0] == "flash"


def test_duplicate_test_names_rejected() -> None:
    with pytest.raises(ValueError):
        build_graph([t("a"), t("a")], dsl.scenario("s", "a"))


def test_provider_map_includes_own_name() -> None:
    tests = {"wifi": t("wifi", provides="network"), "eth": t("eth", jigs="other")}
    providers = build_provider_map(tests, "main")

    assert providers == {"wifi": ["wifi"], "network": ["wifi"]}
