# UTF-8 LF
# Purpose: Wall-clock stamps and per-stage latency accounting for validation runs.
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


def now_iso() -> str:
    """UTC timestamp with millisecond precision and a 'Z' suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class StageTimer:
    """
    Accumulates elapsed milliseconds per named stage.
        timer = StageTimer()
        with timer.stage("search"): ...
        timer.as_dict()  # {"search": 12}
    """

    def __init__(self) -> None:
        self.started_ms = monotonic_ms()
        self._acc: Dict[str, int] = {}

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        t0 = monotonic_ms()
        try:
            yield
        finally:
            self._acc[name] = self._acc.get(name, 0) + (monotonic_ms() - t0)

    def elapsed_ms(self) -> int:
        return monotonic_ms() - self.started_ms

    def as_dict(self) -> Dict[str, int]:
        return dict(self._acc)
