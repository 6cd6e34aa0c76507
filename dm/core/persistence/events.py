"""
Event sink — append-only operation log.

Every public engine operation notifies the sink twice: once when it
starts, once when it finishes (success or failure).  The default sink
writes NDJSON (one JSON object per line) to <home>/events.ndjson.

Reaching the sink is best-effort.  A sink that raises never fails the
operation that notified it.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Any, Callable, Protocol

from pydantic import BaseModel, Field

from dm.core.config.loader import events_path

logger = logging.getLogger(__name__)

SOURCE_CORE = "core"


class Event(BaseModel):
    """A single operation event."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    case_id: str = ""
    source: str = SOURCE_CORE
    activity: str = ""
    level: str = "info"            # trace, debug, info, warn, error
    message: str = ""
    attributes: dict[str, Any] = Field(default_factory=dict)


class EventSink(Protocol):
    def notify(
        self,
        source: str,
        activity: str,
        attributes: dict[str, Any],
        level: str,
    ) -> None: ...


class NdjsonEventSink:
    """Append-only NDJSON event writer.

    Each call to notify() appends a single JSON line. The file is
    created if it doesn't exist.
    """

    def __init__(self, path: Path):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def notify(
        self,
        source: str,
        activity: str,
        attributes: dict[str, Any],
        level: str = "info",
    ) -> None:
        attrs = dict(attributes)
        event = Event(
            source=source,
            activity=activity,
            level=level,
            case_id=str(attrs.pop("case_id", "")),
            message=str(attrs.pop("message", "")),
            attributes=attrs,
        )
        self.write(event)

    def write(self, event: Event) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(event.model_dump(mode="json"), ensure_ascii=False, default=str)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def read_all(self) -> list[Event]:
        """Read all events, oldest first.  Corrupt lines are skipped."""
        if not self._path.is_file():
            return []

        events = []
        with self._path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(Event.model_validate(json.loads(line)))
                except ValueError as e:
                    logger.warning("Skipping corrupt event at line %d: %s", line_num, e)
        return events

    def read_recent(self, n: int = 20) -> list[Event]:
        return self.read_all()[-n:]


# ── Sink selection ──────────────────────────────────────────────

_sink_factory: Callable[[Path], EventSink] = lambda home: NdjsonEventSink(events_path(home))


def set_sink_factory(factory: Callable[[Path], EventSink]) -> None:
    """Replace how operations obtain their sink (front ends, tests)."""
    global _sink_factory
    _sink_factory = factory


def default_sink(home: Path) -> EventSink:
    return _sink_factory(home)


def try_notify(
    sink: EventSink,
    activity: str,
    attributes: dict[str, Any],
    level: str = "info",
) -> None:
    """Notify ``sink``, swallowing any failure."""
    try:
        sink.notify(SOURCE_CORE, activity, attributes, level)
    except Exception as e:
        logger.debug("Event sink unavailable for %s: %s", activity, e)


class OperationEvent:
    """Emit START / result events around one operation.

    Usage::

        with OperationEvent(home, "version.switch", version=v):
            ...

    Exceptions propagate unchanged; they are recorded as an ``error``
    event on the way out.
    """

    def __init__(self, home: Path, activity: str, **attrs: Any):
        self.activity = activity
        self.case_id = f"session_{uuid.uuid4()}"
        self.attrs = attrs
        try:
            self._sink: EventSink | None = default_sink(home)
        except Exception as e:
            logger.debug("Cannot open event sink: %s", e)
            self._sink = None

    def _emit(self, level: str, message: str, **extra: Any) -> None:
        if self._sink is None:
            return
        attrs = {"case_id": self.case_id, "message": message, **self.attrs, **extra}
        try_notify(self._sink, self.activity, attrs, level)

    def __enter__(self) -> OperationEvent:
        self._emit("info", "START")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc is None:
            self._emit("info", "OK")
        else:
            code = getattr(exc, "code", type(exc).__name__)
            self._emit("error", str(exc), error_code=code)
