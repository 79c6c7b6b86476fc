from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable, Optional

from assessment_runtime.runtime.contracts import ClockReading


logger = logging.getLogger(__name__)


class Clock:
    """Countdown / elapsed timer for one session attempt.

    Every reading is recomputed from the absolute `anchor` and `deadline`, never
    accumulated from previous ticks, so a throttled or late tick cannot drift the
    displayed value: `tick(now)` is a pure function of `now` plus the one-shot
    expiry flag.

    When a deadline is present and the remaining time reaches zero, `on_expire` is
    called at most once. The flag is raised before the callback runs, so a tick
    re-entered from inside the callback (or racing it) observes "already fired".
    """

    def __init__(
        self,
        anchor: datetime,
        deadline: Optional[datetime] = None,
        on_expire: Optional[Callable[[ClockReading], None]] = None,
    ):
        self.anchor = anchor
        self.deadline = deadline
        self._on_expire = on_expire
        self._expired_fired = False
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def expiry_fired(self) -> bool:
        return self._expired_fired

    def stop(self) -> None:
        self._stopped = True

    def elapsed(self, now: datetime) -> int:
        return max(0, int((now - self.anchor).total_seconds()))

    def remaining(self, now: datetime) -> Optional[int]:
        if self.deadline is None:
            return None
        # ceil: 0.4s left still shows 1 and is not yet expired
        return max(0, math.ceil((self.deadline - now).total_seconds()))

    def read(self, now: datetime) -> ClockReading:
        expired = self.deadline is not None and now >= self.deadline
        return ClockReading(
            now=now,
            remaining_seconds=self.remaining(now),
            elapsed_seconds=self.elapsed(now),
            expired=expired,
        )

    def tick(self, now: datetime) -> ClockReading:
        reading = self.read(now)
        if self._stopped:
            return reading
        if reading.expired and not self._expired_fired:
            self._expired_fired = True
            self._stopped = True
            logger.info("clock expired anchor=%s deadline=%s", self.anchor.isoformat(), self.deadline)
            if self._on_expire is not None:
                self._on_expire(reading)
        return reading
