import time
from typing import Callable, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from fieldsync.errors import ItemTimeoutError


class Deadline:
    """Time budget for one batch item, checked at every store round-trip."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic) -> None:
        self.seconds = seconds
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def check(self, stage: str) -> None:
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise ItemTimeoutError(f"item exceeded its {self.seconds:g}s budget at {stage}")

    def bound_statements(self, db: Session) -> None:
        # Lock waits are bounded server-side only on PostgreSQL; elsewhere
        # the budget is enforced between statements.
        remaining = self.remaining()
        if remaining is None or db.get_bind().dialect.name != "postgresql":
            return
        ms = max(1, int(remaining * 1000))
        # SET does not accept bind parameters; set_config() does.
        db.execute(text("SELECT set_config('statement_timeout', :ms, true)"), {"ms": str(ms)})


def unbounded() -> Deadline:
    return Deadline(None)
