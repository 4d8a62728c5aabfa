"""RRULE parsing and expansion of recurring events into concrete instances."""
import logging
import re
from dataclasses import replace
from typing import Iterable, Iterator, List, Optional, Tuple

from dateutil.rrule import DAILY, FR, MO, MONTHLY, SA, SU, TH, TU, WE, WEEKLY, YEARLY, rrule

from processor.ics_dates import (
    DAY_MS,
    epoch_ms_to_wall_clock,
    parse_ics_wall_clock,
    resolve_zone,
    wall_clock_to_epoch_ms,
)
from processor.models import EventInstance, RecurrenceRule

logger = logging.getLogger(__name__)

FREQUENCIES = {'DAILY': DAILY, 'WEEKLY': WEEKLY, 'MONTHLY': MONTHLY, 'YEARLY': YEARLY}
WEEKDAYS = {'MO': 0, 'TU': 1, 'WE': 2, 'TH': 3, 'FR': 4, 'SA': 5, 'SU': 6}
RRULE_WEEKDAYS = (MO, TU, WE, TH, FR, SA, SU)

# Occurrences generated per series before expansion is clipped
MAX_ITERATIONS = 1000
# Candidates are generated this far past the window end
FORWARD_GUARD_MS = 31 * DAY_MS
# EXDATE and RECURRENCE-ID values match a candidate within this distance
MATCH_TOLERANCE_MS = 60 * 1000

_BY_DAY = re.compile(r'^([+-]?\d{1,2})?(MO|TU|WE|TH|FR|SA|SU)$')


def parse_rrule(value: str, tzid: Optional[str] = None) -> RecurrenceRule:
    """
    Parse an RRULE value such as ``FREQ=WEEKLY;BYDAY=MO,WE;COUNT=10``.

    Unsupported rule parts are ignored.

    Args:
        value: RRULE property value
        tzid: Zone of the series, used for a floating UNTIL

    Returns:
        RecurrenceRule

    Raises:
        ValueError: If FREQ is missing or unsupported, or a part is malformed
    """
    parts = {}
    for part in value.strip().split(';'):
        if '=' not in part:
            continue
        key, part_value = part.split('=', 1)
        parts[key.strip().upper()] = part_value.strip()

    freq = parts.get('FREQ', '').upper()
    if freq not in FREQUENCIES:
        raise ValueError(f"Unsupported RRULE frequency: {freq or 'missing'}")

    rule = RecurrenceRule(
        freq=freq,
        interval=max(1, int(parts.get('INTERVAL', '1'))),
        count=int(parts['COUNT']) if 'COUNT' in parts else None,
        by_day=[_parse_by_day(token) for token in _split_list(parts.get('BYDAY'))],
        by_month_day=[int(token) for token in _split_list(parts.get('BYMONTHDAY'))],
        by_month=[int(token) for token in _split_list(parts.get('BYMONTH'))],
        by_set_pos=[int(token) for token in _split_list(parts.get('BYSETPOS'))]
    )

    if 'UNTIL' in parts:
        naive, is_utc, is_date = parse_ics_wall_clock(parts['UNTIL'])
        until = wall_clock_to_epoch_ms(naive, resolve_zone(tzid, is_utc))
        # A date-only UNTIL includes the whole day
        rule.until = until + DAY_MS - 1 if is_date else until

    return rule


def recurring_external_id(uid: str, instant: int) -> str:
    """Stable identifier of one occurrence of a recurring series."""
    return f"{uid}_{instant}"


def build_rrule(rule: RecurrenceRule, start_wall) -> rrule:
    """
    Build the dateutil rule stepping from a naive wall-clock DTSTART.

    UNTIL is left out; it is compared as an absolute instant by the caller.
    """
    by_weekday = [
        RRULE_WEEKDAYS[weekday](ordinal) if ordinal else RRULE_WEEKDAYS[weekday]
        for ordinal, weekday in rule.by_day
    ]
    return rrule(
        FREQUENCIES[rule.freq],
        dtstart=start_wall,
        interval=rule.interval,
        count=rule.count,
        byweekday=by_weekday or None,
        bymonthday=rule.by_month_day or None,
        bymonth=rule.by_month or None,
        bysetpos=rule.by_set_pos or None
    )


class RecurrenceExpander:
    """Expands a base event and its RRULE into instances inside a window."""

    def __init__(
        self,
        max_iterations: int = MAX_ITERATIONS,
        forward_guard_ms: int = FORWARD_GUARD_MS,
        tolerance_ms: int = MATCH_TOLERANCE_MS
    ):
        self.max_iterations = max_iterations
        self.forward_guard_ms = forward_guard_ms
        self.tolerance_ms = tolerance_ms

    def expand(
        self,
        base: EventInstance,
        rule: Optional[RecurrenceRule],
        exdates: Iterable[int],
        overrides: Iterable[EventInstance],
        window_start: int,
        window_end: int
    ) -> List[EventInstance]:
        """
        Produce the concrete instances of ``base`` intersecting the window.

        Args:
            base: Normalized base event; its ``timezone`` drives wall-clock stepping
            rule: Parsed RRULE, or None for a single event
            exdates: Excluded occurrence instants
            overrides: Instances carrying a ``recurrence_id`` that replace
                the matching occurrence
            window_start: Lower bound in epoch milliseconds
            window_end: Upper bound in epoch milliseconds

        Returns:
            New list of EventInstance objects; inputs are left untouched
        """
        if rule is None:
            if window_start <= base.start_time <= window_end:
                return [replace(base)]
            return []

        exdates = list(exdates)
        overrides = list(overrides)
        zone = resolve_zone(base.timezone)
        duration = base.end_time - base.start_time
        horizon = window_end + self.forward_guard_ms

        instances: List[EventInstance] = []
        occurrences = self._occurrences(rule, base.start_time, duration, window_start, zone)

        for iteration, wall in enumerate(occurrences):
            if iteration >= self.max_iterations:
                logger.warning(
                    f"Recurrence expansion for '{base.uid}' clipped after "
                    f"{self.max_iterations} iterations",
                    extra={'uid': base.uid, 'freq': rule.freq}
                )
                break

            instant = wall_clock_to_epoch_ms(wall, zone)
            if rule.until is not None and instant > rule.until:
                break
            if instant > horizon:
                break

            instance = self._build_instance(base, instant, duration, exdates, overrides)
            if instance is not None and self._intersects(instance, window_start, window_end):
                instances.append(instance)

        return instances

    def _occurrences(
        self,
        rule: RecurrenceRule,
        start_ms: int,
        duration: int,
        window_start: int,
        zone
    ) -> Iterator:
        """Lazy wall-clock occurrences worth scanning.

        COUNT rules must be walked from DTSTART; other rules resume a day
        before the earliest start that can still reach the window.
        """
        start_wall = epoch_ms_to_wall_clock(start_ms, zone)
        recurrence = build_rrule(rule, start_wall)

        resume_from = window_start - duration - DAY_MS
        if rule.count is not None or resume_from <= start_ms:
            return iter(recurrence)

        return recurrence.xafter(epoch_ms_to_wall_clock(resume_from, zone), inc=True)

    def _build_instance(
        self,
        base: EventInstance,
        instant: int,
        duration: int,
        exdates: List[int],
        overrides: List[EventInstance]
    ) -> Optional[EventInstance]:
        if any(abs(instant - excluded) <= self.tolerance_ms for excluded in exdates):
            return None

        external_id = recurring_external_id(base.uid, instant)

        for override in overrides:
            if override.recurrence_id is not None and \
                    abs(override.recurrence_id - instant) <= self.tolerance_ms:
                return replace(
                    override,
                    external_id=external_id,
                    is_recurrence_instance=True,
                    is_override=True,
                    recurrence_id=instant
                )

        return replace(
            base,
            external_id=external_id,
            start_time=instant,
            end_time=instant + duration,
            is_recurrence_instance=True,
            recurrence_id=instant
        )

    @staticmethod
    def _intersects(instance: EventInstance, window_start: int, window_end: int) -> bool:
        return instance.start_time <= window_end and instance.end_time >= window_start


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [token.strip().upper() for token in value.split(',') if token.strip()]


def _parse_by_day(token: str) -> Tuple[Optional[int], int]:
    match = _BY_DAY.match(token)
    if not match:
        raise ValueError(f"Invalid BYDAY value: {token}")
    ordinal, weekday = match.groups()
    return (int(ordinal) if ordinal else None, WEEKDAYS[weekday])
