from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from random import Random

START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


@dataclass
class TimeGenerator:
    """Deterministic clock that moves forward 5-60 seconds per call."""

    _current: datetime | None = None
    _seed: int = 0
    _rng: Random = field(default_factory=lambda: Random(0))

    def __call__(self) -> datetime:
        return self.next()

    def next(self) -> datetime:
        if self._current is None:
            self._current = START
        self._current += timedelta(seconds=self._rng.randint(5, 60))
        return self._current

    def reset(self) -> None:
        self._current = None
        self._rng = Random(self._seed)


@dataclass
class ScriptedClock:
    """Returns the given timestamps in order, then repeats the last one."""

    timestamps: list[datetime]

    def __call__(self) -> datetime:
        if len(self.timestamps) > 1:
            return self.timestamps.pop(0)
        return self.timestamps[0]


DEFAULT_TIME_GEN = TimeGenerator()
