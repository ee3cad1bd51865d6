"""
OpenClaw - Orchestrator Events

Lifecycle telemetry emitted by the Context Assembler and the Run Engine.
Every event is a small dataclass tagged with a dotted `type`; sinks
receive them through EventSink.emit().

Delivery is best-effort and never blocks the core:
  - emit_safely() logs and swallows sink failures
  - BackgroundEventSink hands events to a daemon thread through a
    bounded queue and drops (with a counter) when the queue is full

Sinks:
  - InMemoryEventSink:   tests, in-process inspection
  - LoggingEventSink:    JSON log lines under openclaw.events
  - BackgroundEventSink: non-blocking wrapper around any sink
  - CompositeEventSink:  fan-out
"""

from __future__ import annotations

import abc
import logging
import queue
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar

from engine.logging import log_structured

logger = logging.getLogger("openclaw.events")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ═══════════════════════════════════════════════════════════════════
# Event Types
# ═══════════════════════════════════════════════════════════════════

@dataclass
class OrchestratorEvent:
    """Base for all events. Subclasses set the `type` tag."""
    type: ClassVar[str] = "orchestrator.event"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **asdict(self)}


@dataclass
class ContextAssembled(OrchestratorEvent):
    type: ClassVar[str] = "orchestrator.context_assembled"
    run_id: str
    project_id: str
    domain: str
    workflow_id: str
    agents: list[str]
    duration_ms: float
    warnings: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class AssemblyFailed(OrchestratorEvent):
    type: ClassVar[str] = "orchestrator.assembly_failed"
    reason: str
    code: str
    trigger: dict[str, Any]
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class ValidationPassed(OrchestratorEvent):
    type: ClassVar[str] = "orchestrator.validation_passed"
    run_id: str
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class ValidationFailed(OrchestratorEvent):
    type: ClassVar[str] = "orchestrator.validation_failed"
    run_id: str
    reason: str
    context_snapshot: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class StepStarted(OrchestratorEvent):
    type: ClassVar[str] = "orchestrator.step_started"
    run_id: str
    step: int
    agent: str
    input: Any = None
    attempt: int = 1
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class StepCompleted(OrchestratorEvent):
    type: ClassVar[str] = "orchestrator.step_completed"
    run_id: str
    step: int
    agent: str
    output: Any
    duration_ms: float
    tokens: int
    cost_usd: float = 0.0
    skipped: bool = False
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class StepRetrying(OrchestratorEvent):
    type: ClassVar[str] = "orchestrator.step_retrying"
    run_id: str
    step: int
    agent: str
    attempt: int
    failure: str
    delay_s: float
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class StateTransition(OrchestratorEvent):
    type: ClassVar[str] = "orchestrator.state_transition"
    run_id: str
    from_status: str
    to_status: str
    reason: str | None = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "run_id": self.run_id,
            "from": self.from_status,
            "to": self.to_status,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }


@dataclass
class RunCompleted(OrchestratorEvent):
    type: ClassVar[str] = "run.completed"
    run_id: str
    total_cost_usd: float
    total_duration_ms: float
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class RunFailed(OrchestratorEvent):
    type: ClassVar[str] = "run.failed"
    run_id: str
    error: str
    failed_step: int
    timestamp: str = field(default_factory=utc_now_iso)


# ═══════════════════════════════════════════════════════════════════
# Sinks
# ═══════════════════════════════════════════════════════════════════

class EventSink(abc.ABC):
    """Receives orchestrator events. Must not block for long."""

    @abc.abstractmethod
    def emit(self, event: OrchestratorEvent) -> None: ...

    def close(self) -> None:
        pass


def emit_safely(sink: EventSink | None, event: OrchestratorEvent) -> None:
    """Deliver an event; a failing sink never interrupts the caller."""
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception as e:
        logger.warning("Event sink failed for %s: %s", event.type, e)


class InMemoryEventSink(EventSink):
    """Thread-safe in-memory sink. Supports waiting for an event (tests)."""

    def __init__(self):
        self._events: list[OrchestratorEvent] = []
        self._cond = threading.Condition()

    def emit(self, event: OrchestratorEvent) -> None:
        with self._cond:
            self._events.append(event)
            self._cond.notify_all()

    @property
    def events(self) -> list[OrchestratorEvent]:
        with self._cond:
            return list(self._events)

    def of_type(self, event_type: str) -> list[OrchestratorEvent]:
        return [e for e in self.events if e.type == event_type]

    def types(self) -> list[str]:
        return [e.type for e in self.events]

    def wait_for(
        self,
        predicate: Callable[[OrchestratorEvent], bool],
        timeout: float = 5.0,
    ) -> OrchestratorEvent | None:
        """Block until an event matching predicate has been emitted."""
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                for e in self._events:
                    if predicate(e):
                        return e
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def clear(self) -> None:
        with self._cond:
            self._events.clear()


_FAILURE_EVENTS = {"orchestrator.assembly_failed", "orchestrator.validation_failed", "run.failed"}


class LoggingEventSink(EventSink):
    """Writes each event as a structured JSON log line."""

    def __init__(self, logger_name: str = "openclaw.events"):
        self._logger = logging.getLogger(logger_name)

    def emit(self, event: OrchestratorEvent) -> None:
        payload = event.to_dict()
        event_type = payload.pop("type")
        level = logging.WARNING if event_type in _FAILURE_EVENTS else logging.INFO
        log_structured(self._logger, level, event_type, **payload)


class CompositeEventSink(EventSink):
    """Fans out to several sinks; one failing sink doesn't starve the others."""

    def __init__(self, sinks: list[EventSink]):
        self.sinks = list(sinks)

    def emit(self, event: OrchestratorEvent) -> None:
        for sink in self.sinks:
            emit_safely(sink, event)

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()


class BackgroundEventSink(EventSink):
    """
    Non-blocking delivery to an inner sink via a daemon thread.

    emit() never waits: when the bounded queue is full the event is
    dropped and counted.
    """

    _STOP = object()

    def __init__(self, inner: EventSink, queue_size: int = 1000):
        self.inner = inner
        self.dropped = 0
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._thread = threading.Thread(
            target=self._drain, name="openclaw-events", daemon=True,
        )
        self._thread.start()

    def emit(self, event: OrchestratorEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning("Event queue full, dropped %s (total dropped=%d)",
                           event.type, self.dropped)

    def _drain(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is self._STOP:
                    return
                emit_safely(self.inner, event)
            finally:
                self._queue.task_done()

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until queued events are delivered. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.005)
        return True

    def close(self) -> None:
        self.flush()
        self._queue.put(self._STOP)
        self._thread.join(timeout=5.0)
        self.inner.close()
