"""
Server-side time source. All expiry decisions use naive UTC from here,
never a client-supplied timestamp.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemClock:
    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    """Clock pinned to a given instant; advance() moves it forward."""

    def __init__(self, at: datetime):
        self.at = at

    def now(self) -> datetime:
        return self.at

    def advance(self, delta):
        self.at = self.at + delta
        return self.at
