"""
Injectable time and id sources.

Engine code never calls ``datetime.now()`` or ``uuid.uuid4()`` directly so
that revision ordering, numbering and timestamps are reproducible in tests.
"""
import secrets
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Optional


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""
        ...

    def today(self, tz: Optional[tzinfo] = None) -> date:
        """Calendar date of ``now()`` in ``tz`` (UTC when not given)."""
        now = self.now()
        return (now.astimezone(tz) if tz else now).date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Test clock that only moves when told to."""

    def __init__(self, fixed_time: Optional[datetime] = None):
        self._fixed_time = fixed_time or datetime(2025, 1, 15, 17, 0, 0, tzinfo=timezone.utc)
        self._advance_seconds = 0

    def now(self) -> datetime:
        return self._fixed_time + timedelta(seconds=self._advance_seconds)

    def set_time(self, time: datetime) -> None:
        self._fixed_time = time
        self._advance_seconds = 0

    def advance(self, seconds: int = 1) -> None:
        self._advance_seconds += seconds


class IdGenerator:
    def new(self, prefix: str = "") -> str:
        value = uuid.uuid4().hex
        return f"{prefix}_{value}" if prefix else value

    def token(self) -> str:
        # Opaque, URL-safe token for the client view link
        return secrets.token_urlsafe(32)


class SequentialIdGenerator(IdGenerator):
    """Predictable ids for tests: ``li_1``, ``li_2``, ``pay_1``..."""

    def __init__(self):
        self._counters = {}

    def new(self, prefix: str = "") -> str:
        key = prefix or "id"
        self._counters[key] = self._counters.get(key, 0) + 1
        return f"{key}_{self._counters[key]}"

    def token(self) -> str:
        self._counters["token"] = self._counters.get("token", 0) + 1
        return f"token-{self._counters['token']:04d}"
