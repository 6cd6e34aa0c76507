"""
Install progress — named stages pushed to the caller's callback.

Stages are emitted in order::

    resolving → (downloading | building) → extracting → installing → done

``downloading`` may be followed by ``building`` when the binary path
fails and the installer falls back to a source build.  An
already-installed version goes straight from ``resolving`` to ``done``.

Cancellation is cooperative: the caller sets a ``threading.Event`` and
the installer stops at the next progress event.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable

from pydantic import BaseModel

from dm.core.errors import InstallCancelled, InternalInvariantError

logger = logging.getLogger(__name__)


class InstallStage(str, Enum):
    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    BUILDING = "building"
    EXTRACTING = "extracting"
    INSTALLING = "installing"
    DONE = "done"


_RANK = {
    InstallStage.RESOLVING: 0,
    InstallStage.DOWNLOADING: 1,
    InstallStage.BUILDING: 2,
    InstallStage.EXTRACTING: 3,
    InstallStage.INSTALLING: 4,
    InstallStage.DONE: 5,
}


class InstallProgress(BaseModel):
    stage: InstallStage
    fraction: float | None = None   # 0.0–1.0, None when indeterminate
    detail: str = ""
    bytes_done: int | None = None
    bytes_total: int | None = None


ProgressCallback = Callable[[InstallProgress], None]


class ProgressReporter:
    """Ordered, cancellable progress emitter for one install."""

    def __init__(
        self,
        callback: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ):
        self._callback = callback
        self._cancel = cancel
        self._stage: InstallStage | None = None

    @property
    def stage(self) -> InstallStage | None:
        return self._stage

    @property
    def cancel_event(self) -> threading.Event | None:
        return self._cancel

    def cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    def check_cancelled(self) -> None:
        if self.cancelled():
            raise InstallCancelled(f"Install cancelled during {self._stage.value if self._stage else 'start'}")

    def emit(
        self,
        stage: InstallStage,
        detail: str = "",
        *,
        fraction: float | None = None,
        bytes_done: int | None = None,
        bytes_total: int | None = None,
    ) -> None:
        """Push one event.  Raises InstallCancelled if abort was requested."""
        if self._stage is not None and _RANK[stage] < _RANK[self._stage]:
            raise InternalInvariantError(
                f"Progress went backwards: {self._stage.value} → {stage.value}"
            )
        if stage != InstallStage.DONE:
            self.check_cancelled()
        self._stage = stage

        if self._callback is None:
            return
        self._callback(
            InstallProgress(
                stage=stage,
                detail=detail,
                fraction=fraction,
                bytes_done=bytes_done,
                bytes_total=bytes_total,
            )
        )
