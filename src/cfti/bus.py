# bus.py
# Event bus / protocol multiplexer.
#
# One ingestion point (publish) fans events out to subscriptions. Every
# subscription owns a bounded queue and a drain thread, so a slow or broken
# sink only ever hurts itself.
from __future__ import annotations

import itertools
import queue
import threading
import time
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from . import events as ev
from .config import EngineConfig
from .errors import ProtocolError, SinkError
from .events import Event
from .protocol import Command, encode_text, encode_trigger, validate_command
from .wire import encode_json, encode_tsv

Sink = Callable[[object], None]
CommandHandler = Callable[[Command], None]

ENCODERS: Dict[str, Callable[[Event], object]] = {
    "tsv": encode_tsv,
    "json": encode_json,
    "text": encode_text,
    "trigger": encode_trigger,
    "event": lambda event: event,
}

_CLOSE = object()


class Subscription:
    """
    One consumer of the bus.

    The sink is called from the drain thread with one encoded record (a str
    without trailing newline, or the Event itself for format "event").
    """

    def __init__(
        self,
        bus: EventBus,
        name: str,
        sink: Sink,
        format: str,
        unit_types: Optional[FrozenSet[str]],
        kinds: Optional[FrozenSet[str]],
        *,
        unit_type: str = "logger",
        maxsize: int = 4096,
        max_failures: int = 3,
        on_close: Optional[Callable[[], None]] = None,
    ):
        if format not in ENCODERS:
            raise ValueError(f"Unknown sink format: {format}")
        self.bus = bus
        self.name = name
        self.sink = sink
        self.format = format
        self.unit_types = unit_types
        self.kinds = kinds
        self.unit_type = unit_type
        self.max_failures = max_failures
        self.on_close = on_close

        self.delivered = 0
        self.dropped = 0
        self.failures = 0
        self.degraded = False
        self.closed = False

        self._encode = ENCODERS[format]
        self._reported_drops = 0
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._thread = threading.Thread(target=self._drain, daemon=True, name=f"sink {name}")
        self._thread.start()

    def matches(self, event: Event) -> bool:
        if event.message_type == ev.PING and event.unit != self.name:
            # PINGs are addressed to one source.
            return False
        to = event.payload.get("to")
        if to is not None and to != self.name:
            # So are replies to a source's own request.
            return False
        if event.payload.get("sink") == self.name:
            # A sink never hears its own drop/failure reports.
            return False
        if self.kinds is not None and event.message_type not in self.kinds:
            return False
        if self.unit_types is not None and event.unit_type not in self.unit_types:
            return False
        return True

    def offer(self, seq: int, event: Event) -> bool:
        """Queue without blocking. A full queue drops the event for this sink only."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait((seq, event))
        except queue.Full:
            self.dropped += 1
            return False
        return True

    def close(self, timeout: Optional[float] = None) -> None:
        """Deliver what is already queued, then stop the drain thread."""
        if self.closed:
            return
        self.closed = True
        if threading.current_thread() is self._thread:
            return
        try:
            self._queue.put(_CLOSE, timeout=timeout)
        except queue.Full:
            pass
        self._thread.join(timeout)

    # ---- drain thread ----

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            if item is _CLOSE:
                break
            _, event = item
            self._deliver(event)
            self._report_drops()
            if self.degraded:
                break
        if self.on_close is not None:
            self.on_close()

    def _deliver(self, event: Event) -> None:
        try:
            record = self._encode(event)
        except (KeyError, ValueError) as e:
            self._report(f"Unable to encode {event.message_type} event: {e}")
            return
        if record is None:
            return
        try:
            self.sink(record)
        except Exception as e:
            self.failures += 1
            err = SinkError(kind="SinkWriteFailed", unit=self.name, message=str(e),
                            details={"failures": self.failures})
            self._report(f"{err.kind}: {err.message} ({self.failures}/{self.max_failures})")
            if self.failures >= self.max_failures:
                self.degraded = True
                self._report("Too many write failures, sink degraded and closed")
                self.bus.unsubscribe(self)
            return
        self.failures = 0
        self.delivered += 1

    def _report_drops(self) -> None:
        dropped = self.dropped
        if dropped > self._reported_drops:
            self._report(f"Dropped {dropped - self._reported_drops} events (queue full)", dropped=dropped)
            self._reported_drops = dropped

    def _report(self, message: str, **payload) -> None:
        self.bus.publish(ev.debug(self.name, self.unit_type, message, sink=self.name, **payload))


# ----------------------------------------------------------------------
# PING / PONG liveness
# ----------------------------------------------------------------------

class LivenessMonitor:
    """
    Outstanding PING ids per source.

    A PONG must echo an outstanding id and arrive within `pong_timeout`
    seconds; a source with an older outstanding PING is unresponsive.
    """

    def __init__(self, pong_timeout: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.pong_timeout = pong_timeout
        self.clock = clock
        self._ids = itertools.count(1)
        self._outstanding: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def ping(self, source: str) -> str:
        ping_id = str(next(self._ids))
        with self._lock:
            self._outstanding.setdefault(source, {})[ping_id] = self.clock()
        return ping_id

    def pong(self, source: str, ping_id: str) -> None:
        with self._lock:
            sent = self._outstanding.get(source, {}).pop(ping_id, None)
        if sent is None:
            raise ProtocolError(kind="UnexpectedPong", unit=source, message=f"PONG {ping_id} matches no PING")
        if self.clock() - sent > self.pong_timeout:
            raise ProtocolError(kind="PongTimeout", unit=source,
                                message=f"PONG {ping_id} arrived after {self.pong_timeout}s")

    def expired(self) -> List[str]:
        now = self.clock()
        with self._lock:
            return sorted(
                source for source, ids in self._outstanding.items()
                if any(now - sent > self.pong_timeout for sent in ids.values())
            )

    def outstanding(self, source: str) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._outstanding.get(source, {}))

    def forget(self, source: str) -> None:
        with self._lock:
            self._outstanding.pop(source, None)


# ----------------------------------------------------------------------
# Bus
# ----------------------------------------------------------------------

class EventBus:
    """
    Fan-out of engine events, fan-in of control commands.

    publish() is safe from any thread; admission order is the order every
    subscription sees.
    """

    def __init__(self, config: Optional[EngineConfig] = None, handler: Optional[CommandHandler] = None):
        self.config = config or EngineConfig()
        self.handler = handler
        self.liveness = LivenessMonitor(self.config.pong_timeout)
        self._lock = threading.Lock()
        self._seq = 0
        self._subs: List[Subscription] = []
        self._sources: Dict[str, Callable[[], None]] = {}
        self._pinged: Set[str] = set()

    @property
    def subscriptions(self) -> List[Subscription]:
        with self._lock:
            return list(self._subs)

    def set_handler(self, handler: Optional[CommandHandler]) -> None:
        self.handler = handler

    # ---- fan-out ----

    def publish(self, event: Event) -> int:
        with self._lock:
            self._seq += 1
            seq = self._seq
            for sub in self._subs:
                if sub.matches(event):
                    sub.offer(seq, event)
        return seq

    def subscribe(
        self,
        sink: Sink,
        format: str = "tsv",
        filter: Optional[Iterable[str]] = None,
        *,
        kinds: Optional[Iterable[str]] = None,
        name: Optional[str] = None,
        unit_type: str = "logger",
        maxsize: Optional[int] = None,
        on_close: Optional[Callable[[], None]] = None,
    ) -> Subscription:
        """
        Attach a sink.

        Args:
            sink: callable receiving one encoded record per event
            format: tsv | json | text | trigger | event
            filter: unit types to deliver (None = everything)
            kinds: event kinds to deliver (None = everything)
            name: the subscriber's unit name (PINGs addressed to it are delivered)
            maxsize: queue bound for this sink (default: config.sink_queue_size)
        """
        with self._lock:
            sub = Subscription(
                self,
                name or f"sink{len(self._subs) + 1}",
                sink,
                format,
                None if filter is None else frozenset(filter),
                None if kinds is None else frozenset(kinds),
                unit_type=unit_type,
                maxsize=maxsize or self.config.sink_queue_size,
                max_failures=self.config.sink_max_failures,
                on_close=on_close,
            )
            self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription, timeout: Optional[float] = None) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)
        sub.close(timeout)

    def close(self) -> None:
        """Flush and close every subscription."""
        with self._lock:
            subs, self._subs = self._subs, []
        for sub in subs:
            sub.close(self.config.termination_timeout)

    # ---- fan-in ----

    def register_source(self, name: str, drop: Callable[[], None], *, ping: bool = True) -> None:
        """`drop` is called when the source misbehaves or stops answering PINGs."""
        with self._lock:
            self._sources[name] = drop
            if ping:
                self._pinged.add(name)

    def unregister_source(self, name: str) -> None:
        with self._lock:
            self._sources.pop(name, None)
            self._pinged.discard(name)
        self.liveness.forget(name)

    def sources(self) -> List[str]:
        with self._lock:
            return sorted(self._sources)

    def pinged_sources(self) -> List[str]:
        """Sources that take part in PING/PONG liveness."""
        with self._lock:
            return sorted(self._pinged)

    def drop_source(self, name: str, reason: str) -> None:
        with self._lock:
            drop = self._sources.pop(name, None)
            self._pinged.discard(name)
        self.liveness.forget(name)
        self.publish(ev.debug(name, "interface", f"Dropping source: {reason}"))
        if drop is not None:
            drop()

    def handle_command(self, source: str, verb: str, args: Iterable[str] = ()) -> Command:
        """
        Validate and dispatch one inbound command.

        PONG and LOG are handled here; everything else goes to the registered
        handler. A ProtocolError drops the source, then propagates.
        """
        try:
            command = validate_command(source, verb, tuple(args))
            if command.verb == "PONG":
                self.liveness.pong(source, command.args[0])
                return command
        except ProtocolError as e:
            self.drop_source(source, str(e).splitlines()[0])
            raise

        if command.verb == "LOG":
            self.publish(Event.create(ev.LOG, source, "interface", command.text))
            return command
        if self.handler is not None:
            self.handler(command)
        return command

    def ping(self, source: str) -> str:
        ping_id = self.liveness.ping(source)
        self.publish(Event.create(ev.PING, source, "interface", id=ping_id))
        return ping_id

    def check_liveness(self) -> List[str]:
        """Drop every source with an unanswered PING older than pong_timeout."""
        expired = self.liveness.expired()
        for source in expired:
            self.drop_source(source, f"no PONG within {self.liveness.pong_timeout}s")
        return expired
