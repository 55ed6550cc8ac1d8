from datetime import date, datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def today(self) -> date:
        ...


class SystemClock:
    """Server clock, UTC calendar day"""

    def today(self) -> date:
        return datetime.now(timezone.utc).date()


system_clock = SystemClock()
