"""
Shop Clock

Single source of "now" for the voice core. Every component that needs the
current date or time (slot filtering, earliest-slot scans, prompts,
conversation log timestamps) asks the shop clock, which is bound to the
tenant's time zone.
"""

from datetime import date, datetime, time, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from barber_voice.config import settings

BG_WEEKDAYS = ("понеделник", "вторник", "сряда", "четвъртък", "петък", "събота", "неделя")
BG_MONTHS = (
    "януари", "февруари", "март", "април", "май", "юни",
    "юли", "август", "септември", "октомври", "ноември", "декември",
)


class ShopClock:
    """
    Time zone aware clock for one shop.

    Args:
        timezone: IANA zone name, defaults to the configured shop zone
        now_fn: Optional callable returning an aware datetime; used to pin
            time in tests
    """

    def __init__(
        self,
        timezone: Optional[str] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self._zone = ZoneInfo(timezone or settings.shop.timezone)
        self._now_fn = now_fn

    @property
    def zone(self) -> ZoneInfo:
        return self._zone

    def now(self) -> datetime:
        """Current shop-local time (aware)."""
        if self._now_fn is not None:
            return self._now_fn().astimezone(self._zone)
        return datetime.now(self._zone)

    def today(self) -> date:
        return self.now().date()

    def today_str(self) -> str:
        return self.today().isoformat()

    def timestamp(self) -> float:
        """Epoch seconds of :meth:`now`."""
        return self.now().timestamp()

    def is_today(self, day: str) -> bool:
        return day == self.today_str()

    def localize(self, day: str, hhmm: str) -> datetime:
        """Combine a YYYY-MM-DD date and HH:MM time into an aware shop datetime."""
        hours, minutes = (int(part) for part in hhmm.split(":", 1))
        return datetime.combine(date.fromisoformat(day), time(hours, minutes), tzinfo=self._zone)

    def days_ahead(self, count: int) -> list:
        """ISO dates from today (inclusive) for ``count`` days."""
        start = self.today()
        return [(start + timedelta(days=offset)).isoformat() for offset in range(count)]

    def describe_now(self) -> str:
        """Bulgarian human description used in prompts: 'събота, 1 юни 2024, 10:15'."""
        now = self.now()
        return (
            f"{BG_WEEKDAYS[now.weekday()]}, {now.day} {BG_MONTHS[now.month - 1]} "
            f"{now.year}, {now.strftime('%H:%M')}"
        )
