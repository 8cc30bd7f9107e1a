"""Weekly schedule windows: local day/time in a caller timezone to canonical day/time.

Days are numbered 0=Sunday .. 6=Saturday throughout thermoctl. The canonical
day and clock time of a window are the ones observed in the operating timezone
after conversion, so a window can move to a neighbouring day when the
conversion crosses midnight.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from thermoctl.core.model import ScheduleRequest, ScheduleWindow

LOGGER = logging.getLogger(__name__)

SUNDAY = 0
DAYS_PER_WEEK = 7

TimezoneLocator = Callable[[], str]


@dataclass(frozen=True)
class CanonicalWindow:
    start_day: int
    start_time: str
    end_day: int
    end_time: str
    timezone: str


def day_of_week(moment: datetime) -> int:
    """Sunday-based day of week (0=Sunday)."""
    return moment.isoweekday() % DAYS_PER_WEEK


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _zone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ZoneInfoNotFoundError(f"Unknown timezone '{name}'") from exc


def shift_to_day(moment: datetime, requested_day: int) -> datetime:
    """Move `moment` onto `requested_day` of its week, never onto a past Sunday."""
    current = day_of_week(moment)
    if requested_day > current:
        return moment + timedelta(days=requested_day - current)
    if requested_day < current:
        moment = moment - timedelta(days=current - requested_day)
        if requested_day == SUNDAY:
            moment = moment + timedelta(days=DAYS_PER_WEEK)
    return moment


class ScheduleWindowNormalizer:
    def __init__(
        self,
        operating_timezone: str | tzinfo,
        default_timezone: str,
        *,
        clock: Callable[[], datetime] = utcnow,
        locator: TimezoneLocator | None = None,
    ) -> None:
        if isinstance(operating_timezone, str):
            operating_timezone = _zone(operating_timezone)
        self.operating_timezone = operating_timezone
        self.default_timezone = default_timezone
        self._clock = clock
        self._locator = locator

    def resolve_timezone(self, name: str | None = None) -> tuple[tzinfo, str]:
        """Return the caller timezone, falling back to the configured default.

        When no name is given the injected locator is asked; any failure of the
        locator or of the zone lookup yields the default timezone.
        """
        if name is None and self._locator is not None:
            try:
                name = self._locator()
            except Exception as exc:
                LOGGER.warning("Timezone lookup failed (%s), using %s", exc, self.default_timezone)
                name = None
        if name:
            try:
                return _zone(name), name
            except ZoneInfoNotFoundError:
                LOGGER.warning("Unknown timezone '%s', using %s", name, self.default_timezone)
        return _zone(self.default_timezone), self.default_timezone

    def normalize(
        self,
        requested_day: int,
        hour: int,
        minute: int,
        caller_timezone: tzinfo,
        *,
        now: datetime | None = None,
    ) -> tuple[int, str]:
        """Return the canonical (day, "HH:MM") for a local day/time in `caller_timezone`."""
        if now is None:
            now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        local = now.astimezone(caller_timezone).replace(hour=hour, minute=minute, second=0, microsecond=0)
        local = shift_to_day(local, requested_day)
        canonical = local.astimezone(self.operating_timezone)
        return day_of_week(canonical), canonical.strftime("%H:%M")

    def normalize_window(
        self,
        request: ScheduleRequest,
        timezone_name: str | None = None,
        *,
        now: datetime | None = None,
    ) -> CanonicalWindow:
        caller_timezone, resolved_name = self.resolve_timezone(timezone_name)
        if now is None:
            now = self._clock()
        start_day, start_time = self.normalize(
            request.day, request.start_hour, request.start_minute, caller_timezone, now=now
        )
        end_day, end_time = self.normalize(
            request.end_day, request.end_hour, request.end_minute, caller_timezone, now=now
        )
        return CanonicalWindow(
            start_day=start_day,
            start_time=start_time,
            end_day=end_day,
            end_time=end_time,
            timezone=resolved_name,
        )

    def active_window(
        self,
        windows: Iterable[ScheduleWindow],
        *,
        now: datetime | None = None,
    ) -> ScheduleWindow | None:
        """Window whose command should be in force now.

        The first window (by id) whose canonical day is today and whose span
        covers now wins. Otherwise the most recently stored non-mode window of
        an earlier day this week carries over.
        """
        if now is None:
            now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local = now.astimezone(self.operating_timezone)
        today, clock = day_of_week(local), local.strftime("%H:%M")
        windows = list(windows)

        candidates = [
            w for w in windows
            if w.start_day == today and w.start_time <= clock <= w.end_time
        ]
        if candidates:
            return min(candidates, key=lambda w: (w.id is None, w.id or 0))

        carried = [w for w in windows if w.start_day < today and w.command_name != "mode"]
        if not carried:
            return None
        return max(carried, key=lambda w: w.id or 0)
