from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from assessment_runtime.runtime.contracts import NEVER, DisclosureStatus, Hint


DEFAULT_HINT_INTERVAL = timedelta(minutes=5)
DEFAULT_AI_ASSIST_DELAY = timedelta(minutes=7)


class DisclosureScheduler:
    """Time-gated reveal of hints and AI assistance.

    Purely arithmetic against `anchor_time`; nothing is cached between calls, so
    the lock state after a reload is identical as long as the caller preserves the
    anchor. Before the session starts (`anchor_time is None`) everything is locked
    and unlocks at NEVER.
    """

    def __init__(
        self,
        anchor_time: Optional[datetime],
        *,
        hint_interval: timedelta = DEFAULT_HINT_INTERVAL,
        ai_assist_delay: timedelta = DEFAULT_AI_ASSIST_DELAY,
    ):
        self.anchor_time = anchor_time
        self.hint_interval = hint_interval
        self.ai_assist_delay = ai_assist_delay

    def hint_unlock_time(self, hint: Hint) -> datetime:
        if self.anchor_time is None:
            return NEVER
        return self.anchor_time + (int(hint.ordinal) + 1) * self.hint_interval

    def status(self, hint: Hint, now: datetime) -> DisclosureStatus:
        unlocks_at = self.hint_unlock_time(hint)
        return DisclosureStatus(locked=now < unlocks_at, unlocks_at=unlocks_at)

    def statuses(self, hints: List[Hint], now: datetime) -> List[DisclosureStatus]:
        return [self.status(h, now) for h in hints]

    def ai_status(self, now: datetime) -> DisclosureStatus:
        if self.anchor_time is None:
            return DisclosureStatus(locked=True, unlocks_at=NEVER)
        unlocks_at = self.anchor_time + self.ai_assist_delay
        return DisclosureStatus(locked=now < unlocks_at, unlocks_at=unlocks_at)

    def next_unlock(self, hints: List[Hint], now: datetime) -> Optional[datetime]:
        """Earliest pending unlock (hint or AI), for the "next reveal in" countdown."""
        pending = [s.unlocks_at for s in self.statuses(hints, now) if s.locked and s.unlocks_at != NEVER]
        ai = self.ai_status(now)
        if ai.locked and ai.unlocks_at != NEVER:
            pending.append(ai.unlocks_at)
        return min(pending) if pending else None
