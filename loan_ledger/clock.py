"""
Clock Module

Every date comparison in the ledger goes through an injected clock so the
"today" of a sweep, payment or settlement is pinned to one fixed calendar.
"""

from abc import ABC, abstractmethod
from datetime import datetime, date, time, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo


def resolve_timezone(name: str) -> tzinfo:
    """Map a calendar name to a tzinfo ("UTC" needs no tz database)"""
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class Clock(ABC):
    """Source of the current instant and calendar day"""
    
    @property
    @abstractmethod
    def tz(self) -> tzinfo:
        """Calendar the clock reports days in"""
        pass
    
    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware instant"""
        pass
    
    def today(self) -> date:
        """Current calendar day in the clock's calendar"""
        return self.now().astimezone(self.tz).date()
    
    def end_of_day(self, day: date) -> datetime:
        """Last second of a calendar day"""
        return datetime.combine(day, time(23, 59, 59), tzinfo=self.tz)


class SystemClock(Clock):
    """Wall clock reading in a fixed calendar"""
    
    def __init__(self, calendar: str = "UTC"):
        self._tz = resolve_timezone(calendar)
    
    @property
    def tz(self) -> tzinfo:
        return self._tz
    
    def now(self) -> datetime:
        return datetime.now(self._tz)


class FixedClock(Clock):
    """Clock frozen at a given instant, advanced manually"""
    
    def __init__(self, current: datetime, calendar: Optional[str] = None):
        if calendar:
            self._tz = resolve_timezone(calendar)
        else:
            self._tz = current.tzinfo or timezone.utc
        if current.tzinfo is None:
            current = current.replace(tzinfo=self._tz)
        self._current = current
    
    @classmethod
    def at_date(cls, day: date, calendar: str = "UTC") -> 'FixedClock':
        """Clock pinned to noon of a calendar day"""
        tz = resolve_timezone(calendar)
        return cls(datetime.combine(day, time(12, 0), tzinfo=tz))
    
    @property
    def tz(self) -> tzinfo:
        return self._tz
    
    def now(self) -> datetime:
        return self._current
    
    def set(self, current: datetime) -> None:
        if current.tzinfo is None:
            current = current.replace(tzinfo=self._tz)
        self._current = current
    
    def set_date(self, day: date) -> None:
        self.set(datetime.combine(day, time(12, 0), tzinfo=self._tz))
