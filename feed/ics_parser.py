"""Line-level ICS parser producing VEVENT property bags."""
import logging
import re
from typing import List, Optional

from processor.models import IcsProperty, ParsedCalendarEvent

logger = logging.getLogger(__name__)

REQUIRED_PROPERTIES = ('DTSTART', 'SUMMARY')

_ESCAPES = re.compile(r'\\([\\;,nN])')


def unfold_lines(text: str) -> List[str]:
    """
    Split ICS text into logical lines.

    Physical lines that start with a space or tab continue the previous
    line; the leading whitespace character is dropped.

    Args:
        text: Raw feed content

    Returns:
        List of unfolded lines without line terminators
    """
    lines: List[str] = []

    for raw_line in re.split(r'\r?\n', text):
        if raw_line[:1] in (' ', '\t') and lines:
            lines[-1] += raw_line[1:]
        else:
            lines.append(raw_line)

    return lines


def parse_property(line: str) -> IcsProperty:
    """
    Parse a content line such as ``DTSTART;TZID=Europe/Helsinki:20220401T180000``.

    The value starts after the first colon that is not inside a quoted
    parameter value. A line with no colon is returned as a bare value with
    an empty name instead of raising.

    Args:
        line: Unfolded content line

    Returns:
        IcsProperty with upper-cased name and parameter names
    """
    colon_index = _find_value_separator(line)
    if colon_index == -1:
        return IcsProperty(name='', value=line, params={})

    head = line[:colon_index]
    value = line[colon_index + 1:]

    parts = _split_unquoted(head, ';')
    name = parts[0].strip().upper()
    params = {}

    for part in parts[1:]:
        equal_index = part.find('=')
        if equal_index == -1:
            continue
        param_name = part[:equal_index].strip().upper()
        param_value = part[equal_index + 1:].strip()
        if len(param_value) >= 2 and param_value[0] == '"' and param_value[-1] == '"':
            param_value = param_value[1:-1]
        params[param_name] = param_value

    return IcsProperty(name=name, value=value, params=params)


def parse_ics_content(text: str) -> List[ParsedCalendarEvent]:
    """
    Extract VEVENT blocks from ICS text.

    Properties belonging to components nested inside an event (VALARM)
    are ignored. Blocks without DTSTART or SUMMARY are dropped.

    Args:
        text: Raw feed content

    Returns:
        List of ParsedCalendarEvent objects in feed order
    """
    events: List[ParsedCalendarEvent] = []
    current: Optional[ParsedCalendarEvent] = None
    nested_depth = 0
    dropped = 0

    for line in unfold_lines(text):
        stripped = line.strip()
        if not stripped:
            continue

        upper = stripped.upper()

        if upper == 'BEGIN:VEVENT':
            current = ParsedCalendarEvent()
            nested_depth = 0
            continue

        if current is None:
            continue

        if upper == 'END:VEVENT':
            if _has_required_properties(current):
                events.append(current)
            else:
                dropped += 1
            current = None
            continue

        if upper.startswith('BEGIN:'):
            nested_depth += 1
            continue
        if upper.startswith('END:'):
            nested_depth = max(0, nested_depth - 1)
            continue
        if nested_depth:
            continue

        prop = parse_property(stripped)
        if not prop.name:
            logger.debug(f"Ignoring malformed ICS line: {stripped[:80]}")
            continue
        current.add(prop)

    if dropped:
        logger.debug(f"Dropped {dropped} VEVENT blocks missing DTSTART or SUMMARY")

    logger.info(f"Parsed {len(events)} events from ICS content")
    return events


def unescape_text(value: Optional[str]) -> Optional[str]:
    """Decode ICS TEXT escapes (``\\n``, ``\\,``, ``\\;``, ``\\\\``)."""
    if value is None:
        return None

    def _replace(match):
        char = match.group(1)
        return '\n' if char in 'nN' else char

    return _ESCAPES.sub(_replace, value)


def _has_required_properties(event: ParsedCalendarEvent) -> bool:
    return all(event.has(name) for name in REQUIRED_PROPERTIES)


def _find_value_separator(line: str) -> int:
    in_quotes = False
    for index, char in enumerate(line):
        if char == '"':
            in_quotes = not in_quotes
        elif char == ':' and not in_quotes:
            return index
    return -1


def _split_unquoted(text: str, separator: str) -> List[str]:
    parts = []
    current = []
    in_quotes = False

    for char in text:
        if char == '"':
            in_quotes = not in_quotes
        if char == separator and not in_quotes:
            parts.append(''.join(current))
            current = []
        else:
            current.append(char)

    parts.append(''.join(current))
    return parts
