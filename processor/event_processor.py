"""Event processor turning parsed VEVENT blocks into windowed instances."""
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from feed.ics_parser import unescape_text
from processor.ics_dates import (
    DAY_MS,
    is_date_only,
    parse_duration,
    parse_exdates,
    parse_ics_wall_clock,
    parse_property_date,
    resolve_zone,
)
from processor.models import EventInstance, ParsedCalendarEvent, SyncSettings
from processor.recurrence import RecurrenceExpander, parse_rrule, recurring_external_id

logger = logging.getLogger(__name__)


class EventProcessor:
    """Processor for normalizing, expanding and windowing feed events."""

    MAX_TITLE_LENGTH = 200
    MAX_DESCRIPTION_LENGTH = 2000
    DEFAULT_TITLE = 'Untitled Event'

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        expander: Optional[RecurrenceExpander] = None
    ):
        """
        Initialize the processor.

        Args:
            settings: Window and duration settings (defaults if omitted)
            expander: Recurrence expander to use
        """
        self.settings = settings or SyncSettings()
        self.expander = expander or RecurrenceExpander()

    def expansion_window(self, now_ms: int) -> Tuple[int, int]:
        """Return the (start, end) bounds recurring series are expanded into."""
        return (
            now_ms - self.settings.lookback_days * DAY_MS,
            now_ms + self.settings.lookahead_days * DAY_MS
        )

    def process_events(
        self,
        parsed_events: List[ParsedCalendarEvent],
        now_ms: int
    ) -> List[EventInstance]:
        """
        Expand parsed events and keep the recent or upcoming instances.

        Args:
            parsed_events: VEVENT blocks from the ICS parser
            now_ms: Reference time in epoch milliseconds

        Returns:
            Instances sorted by start time
        """
        window_start, window_end = self.expansion_window(now_ms)
        retention_cutoff = now_ms - self.settings.retention_days * DAY_MS

        base_events, overrides = self._split_overrides(parsed_events)
        instances: List[EventInstance] = []

        for parsed in base_events:
            try:
                instances.extend(
                    self._expand_single_event(
                        parsed, overrides.pop(parsed.uid, []), window_start, window_end
                    )
                )
            except (ValueError, OverflowError) as e:
                logger.warning(
                    f"Failed to process event '{parsed.value('SUMMARY')}': {e}"
                )
                continue

        # Overrides whose series is not in the feed are kept as single events
        for orphans in overrides.values():
            for parsed in orphans:
                try:
                    instance = self._build_instance(parsed, standalone_override=True)
                except ValueError as e:
                    logger.warning(
                        f"Failed to process override '{parsed.value('SUMMARY')}': {e}"
                    )
                    continue
                if window_start <= instance.start_time <= window_end:
                    instances.append(instance)

        relevant = [
            instance for instance in instances
            if instance.start_time >= retention_cutoff
        ]
        relevant.sort(key=lambda instance: (instance.start_time, instance.external_id))

        logger.info(
            f"Processed {len(relevant)} relevant instances out of "
            f"{len(instances)} expanded from {len(parsed_events)} feed events"
        )
        return relevant

    def _split_overrides(
        self,
        parsed_events: List[ParsedCalendarEvent]
    ) -> Tuple[List[ParsedCalendarEvent], Dict[str, List[ParsedCalendarEvent]]]:
        base_events = []
        overrides: Dict[str, List[ParsedCalendarEvent]] = defaultdict(list)

        for parsed in parsed_events:
            if parsed.has('RECURRENCE-ID') and parsed.uid:
                overrides[parsed.uid].append(parsed)
            else:
                base_events.append(parsed)

        return base_events, overrides

    def _expand_single_event(
        self,
        parsed: ParsedCalendarEvent,
        override_events: List[ParsedCalendarEvent],
        window_start: int,
        window_end: int
    ) -> List[EventInstance]:
        base = self._build_instance(parsed)
        rrule_value = parsed.value('RRULE')

        if not rrule_value:
            return self.expander.expand(base, None, [], [], window_start, window_end)

        tzid = base.timezone
        rule = parse_rrule(rrule_value, tzid)

        exdates = []
        for prop in parsed.get_all('EXDATE'):
            exdates.extend(parse_exdates(prop, tzid))

        overrides = []
        for override_event in override_events:
            try:
                overrides.append(self._build_instance(override_event))
            except ValueError as e:
                logger.warning(f"Skipping invalid override for '{base.uid}': {e}")

        return self.expander.expand(
            base, rule, exdates, overrides, window_start, window_end
        )

    def _build_instance(
        self,
        parsed: ParsedCalendarEvent,
        standalone_override: bool = False
    ) -> EventInstance:
        """
        Normalize one VEVENT block into an instance.

        Raises:
            ValueError: If DTSTART or DTEND cannot be parsed
        """
        dtstart = parsed.get('DTSTART')
        naive, is_utc, _ = parse_ics_wall_clock(dtstart.value)
        tzid = dtstart.params.get('TZID')
        zone = resolve_zone(tzid, is_utc)
        timezone = zone.zone if zone is not None else None

        start_time = parse_property_date(dtstart)
        all_day = is_date_only(dtstart)
        end_time = self._resolve_end_time(parsed, start_time, all_day, tzid)

        title = unescape_text(parsed.value('SUMMARY', '')).strip() or self.DEFAULT_TITLE
        description = unescape_text(parsed.value('DESCRIPTION'))
        if description:
            description = description[:self.MAX_DESCRIPTION_LENGTH]
        location = unescape_text(parsed.value('LOCATION')) or None

        uid = parsed.uid
        recurrence_id = None
        if parsed.has('RECURRENCE-ID'):
            recurrence_id = parse_property_date(parsed.get('RECURRENCE-ID'), tzid)

        if standalone_override:
            external_id = self.generate_external_id(uid, title, recurrence_id, recurring=True)
        else:
            external_id = self.generate_external_id(uid, title, start_time)

        return EventInstance(
            uid=uid or external_id,
            external_id=external_id,
            title=title[:self.MAX_TITLE_LENGTH],
            description=description or None,
            location=location,
            start_time=start_time,
            end_time=end_time,
            all_day=all_day,
            is_recurrence_instance=standalone_override,
            is_override=standalone_override,
            recurrence_id=recurrence_id,
            timezone=timezone
        )

    def _resolve_end_time(
        self,
        parsed: ParsedCalendarEvent,
        start_time: int,
        all_day: bool,
        tzid: Optional[str]
    ) -> int:
        dtend = parsed.get('DTEND')
        if dtend:
            end_time = parse_property_date(dtend, tzid)
            if end_time >= start_time:
                return end_time
            logger.warning(
                f"DTEND before DTSTART for '{parsed.value('SUMMARY')}', using default duration"
            )

        duration = parsed.value('DURATION')
        if duration:
            return start_time + max(0, parse_duration(duration))

        if all_day:
            return start_time + DAY_MS
        return start_time + self.settings.default_duration_ms

    def generate_external_id(
        self,
        uid: Optional[str],
        title: str,
        start_time: int,
        recurring: bool = False
    ) -> str:
        """
        Generate the stable identifier of an event or one occurrence of a series.

        Args:
            uid: Event UID, if the feed provides one
            title: Event title used when UID is missing
            start_time: Start instant (the original slot for overrides)
            recurring: True for an occurrence of a recurring series

        Returns:
            ``<uid>_<start>`` for occurrences, the UID for single events, or
            ``<title>_<start>`` for feeds without UIDs
        """
        if uid and recurring:
            return recurring_external_id(uid, start_time)
        if uid:
            return uid
        return f"{title}_{start_time}"
