"""Normalization of ICS date and date-time tokens to epoch milliseconds."""
import logging
import re
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

import pytz

from feed.ics_parser import parse_property
from processor.models import IcsProperty

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

# Zone names emitted by Outlook/Exchange feeds instead of IANA identifiers
WINDOWS_ZONES = {
    'UTC': 'UTC',
    'GMT Standard Time': 'Europe/London',
    'W. Europe Standard Time': 'Europe/Berlin',
    'Romance Standard Time': 'Europe/Paris',
    'Central Europe Standard Time': 'Europe/Budapest',
    'FLE Standard Time': 'Europe/Helsinki',
    'E. Europe Standard Time': 'Europe/Chisinau',
    'Russian Standard Time': 'Europe/Moscow',
    'Eastern Standard Time': 'America/New_York',
    'Central Standard Time': 'America/Chicago',
    'Mountain Standard Time': 'America/Denver',
    'Pacific Standard Time': 'America/Los_Angeles',
    'Tokyo Standard Time': 'Asia/Tokyo',
    'AUS Eastern Standard Time': 'Australia/Sydney',
}

_DATE_TIME = re.compile(
    r'^(\d{4})(\d{2})(\d{2})(?:T(\d{2})(\d{2})(\d{2})?)?(Z)?$'
)
_DURATION = re.compile(
    r'^([+-])?P(?:(\d+)W)?(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?)?$'
)


def parse_ics_wall_clock(token: str) -> Tuple[datetime, bool, bool]:
    """
    Split an ICS date or date-time token into its wall-clock components.

    Args:
        token: Value such as ``20220401``, ``20220401T180000`` or ``20220401T180000Z``

    Returns:
        Tuple of (naive datetime, is_utc, is_date)

    Raises:
        ValueError: If the token is not a recognizable ICS date
    """
    match = _DATE_TIME.match(token.strip().upper())
    if not match:
        raise ValueError(f"Invalid ICS date value: {token!r}")

    year, month, day, hour, minute, second, zulu = match.groups()
    is_date = hour is None
    naive = datetime(
        int(year), int(month), int(day),
        int(hour or 0), int(minute or 0), int(second or 0)
    )
    return naive, bool(zulu), is_date


def resolve_zone(tzid: Optional[str], is_utc: bool = False):
    """
    Resolve the zone a wall-clock time is expressed in.

    Args:
        tzid: TZID parameter value, if any
        is_utc: True when the token carried a trailing ``Z``

    Returns:
        pytz timezone, or None for floating (host local) time
    """
    if is_utc:
        return pytz.utc
    if not tzid:
        return None

    name = tzid.strip().strip('"')
    name = WINDOWS_ZONES.get(name, name)
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"Invalid timezone {tzid}, falling back to local time")
        return None


def wall_clock_to_epoch_ms(naive: datetime, zone) -> int:
    """
    Convert a naive wall-clock time in ``zone`` to epoch milliseconds.

    A ``None`` zone means floating time in the host's local zone.
    """
    if zone is None:
        return int(naive.timestamp() * 1000)
    aware = zone.localize(naive)
    return int(aware.timestamp() * 1000)


def epoch_ms_to_wall_clock(epoch_ms: int, zone) -> datetime:
    """Inverse of wall_clock_to_epoch_ms, returning a naive datetime."""
    if zone is None:
        return datetime.fromtimestamp(epoch_ms / 1000)
    utc_time = datetime.fromtimestamp(epoch_ms / 1000, tz=pytz.utc)
    return utc_time.astimezone(zone).replace(tzinfo=None)


def parse_ics_date(token: str, tzid: Optional[str] = None) -> int:
    """
    Normalize an ICS date or date-time to an absolute instant.

    Accepts either a bare token or a full property line such as
    ``DTSTART;TZID=Europe/Helsinki:20220401T180000``.

    Args:
        token: Date token or property line
        tzid: Timezone identifier used when the token is not UTC

    Returns:
        Epoch milliseconds

    Raises:
        ValueError: If the token is not a recognizable ICS date
    """
    if ':' in token:
        prop = parse_property(token)
        return parse_ics_date(prop.value, prop.params.get('TZID', tzid))

    naive, is_utc, _ = parse_ics_wall_clock(token)
    zone = resolve_zone(tzid, is_utc)
    return wall_clock_to_epoch_ms(naive, zone)


def parse_property_date(prop: IcsProperty, default_tzid: Optional[str] = None) -> int:
    """Normalize the value of a DTSTART/DTEND/RECURRENCE-ID property."""
    return parse_ics_date(prop.value, prop.params.get('TZID', default_tzid))


def is_date_only(prop: IcsProperty) -> bool:
    """True when the property holds an all-day DATE value."""
    if prop.params.get('VALUE', '').upper() == 'DATE':
        return True
    return len(prop.value.strip()) == 8


def parse_exdates(
    exdate: Union[IcsProperty, str, None],
    default_tzid: Optional[str] = None
) -> List[int]:
    """
    Normalize a comma separated EXDATE value.

    Args:
        exdate: EXDATE property, raw property line or bare value list
        default_tzid: Zone applied when the property has no TZID

    Returns:
        List of epoch milliseconds; unparseable entries are skipped
    """
    if not exdate:
        return []

    if isinstance(exdate, str):
        if ':' in exdate:
            exdate = parse_property(exdate)
        else:
            exdate = IcsProperty(name='EXDATE', value=exdate)

    tzid = exdate.params.get('TZID', default_tzid)
    instants = []

    for token in exdate.value.split(','):
        token = token.strip()
        if not token:
            continue
        try:
            instants.append(parse_ics_date(token, tzid))
        except ValueError:
            logger.warning(f"Skipping invalid EXDATE value: {token}")

    return instants


def parse_duration(value: str) -> int:
    """
    Parse an ICS DURATION value (``PT1H30M``, ``P1D``, ``-PT15M``, ``P2W``).

    Returns:
        Duration in milliseconds

    Raises:
        ValueError: If the value is not a valid duration
    """
    match = _DURATION.match(value.strip().upper())
    if not match or value.strip().upper().rstrip('T') in ('P', '+P', '-P'):
        raise ValueError(f"Invalid ICS duration: {value!r}")

    sign, weeks, days, hours, minutes, seconds = match.groups()
    delta = timedelta(
        weeks=int(weeks or 0),
        days=int(days or 0),
        hours=int(hours or 0),
        minutes=int(minutes or 0),
        seconds=int(seconds or 0)
    )
    total = int(delta.total_seconds() * 1000)
    return -total if sign == '-' else total
