"""In-process progress tracking for streamed exports.

Entries outlive their run by `ttl_seconds` so a client can poll the final
state; expired entries are evicted lazily on every read and write.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import settings
from schemas.export import ExportProgress

logger = logging.getLogger(__name__)

TERMINAL = ("completed", "failed")


@dataclass
class ExportRun:
    run_id: str
    total: int
    started: float
    processed: int = 0
    status: str = "starting"
    finished: Optional[float] = None
    error: Optional[str] = None


class ExportProgressCache:
    def __init__(
        self,
        ttl_seconds: float = settings.EXPORT_PROGRESS_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._runs: dict[str, ExportRun] = {}

    def __len__(self) -> int:
        self.evict_expired()
        return len(self._runs)

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [
            run_id for run_id, run in self._runs.items()
            if run.finished is not None and now - run.finished >= self.ttl_seconds
        ]
        for run_id in expired:
            del self._runs[run_id]
        return len(expired)

    def start(self, run_id: str, total: int) -> None:
        self.evict_expired()
        self._runs[run_id] = ExportRun(run_id=run_id, total=total, started=self._clock())

    def advance(self, run_id: str, processed: int) -> None:
        run = self._runs.get(run_id)
        if run is not None and run.status not in TERMINAL:
            run.processed = processed
            run.status = "processing"

    def complete(self, run_id: str) -> None:
        self._finish(run_id, "completed")

    def fail(self, run_id: str, error: str) -> None:
        self._finish(run_id, "failed", error)

    def is_finished(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        return run is None or run.status in TERMINAL

    def _finish(self, run_id: str, status: str, error: Optional[str] = None) -> None:
        run = self._runs.get(run_id)
        if run is None or run.status in TERMINAL:
            return
        run.status = status
        run.error = error
        run.finished = self._clock()
        self.evict_expired()

    def get(self, run_id: str) -> Optional[ExportProgress]:
        self.evict_expired()
        run = self._runs.get(run_id)
        if run is None:
            return None
        end = run.finished if run.finished is not None else self._clock()
        return ExportProgress(
            run_id=run.run_id,
            status=run.status,
            total=run.total,
            processed=run.processed,
            percentage=round(run.processed * 100 / run.total) if run.total else (100 if run.status == "completed" else 0),
            elapsed_seconds=round(end - run.started, 3),
            error=run.error,
        )
