"""Data models for calendar feed synchronization."""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class IcsProperty:
    """Single ICS content line split into name, parameters and value."""
    name: str
    value: str
    params: Dict[str, str] = field(default_factory=dict)


@dataclass
class ParsedCalendarEvent:
    """Raw VEVENT block as a property bag keyed by property name."""
    properties: Dict[str, List[IcsProperty]] = field(default_factory=dict)

    def add(self, prop: IcsProperty) -> None:
        self.properties.setdefault(prop.name, []).append(prop)

    def get(self, name: str) -> Optional[IcsProperty]:
        """Return the first occurrence of a property, or None."""
        values = self.properties.get(name)
        return values[0] if values else None

    def get_all(self, name: str) -> List[IcsProperty]:
        return list(self.properties.get(name, []))

    def value(self, name: str, default: Optional[str] = None) -> Optional[str]:
        prop = self.get(name)
        return prop.value if prop else default

    def has(self, name: str) -> bool:
        return bool(self.properties.get(name))

    @property
    def uid(self) -> Optional[str]:
        return self.value('UID')


@dataclass
class RecurrenceRule:
    """Parsed RRULE limited to the commonly emitted subset."""
    freq: str
    interval: int = 1
    count: Optional[int] = None
    until: Optional[int] = None
    by_day: List[Tuple[Optional[int], int]] = field(default_factory=list)
    by_month_day: List[int] = field(default_factory=list)
    by_month: List[int] = field(default_factory=list)
    by_set_pos: List[int] = field(default_factory=list)


@dataclass
class EventInstance:
    """Concrete occurrence ready to be written to the event store."""
    uid: Optional[str]
    external_id: str
    title: str
    description: Optional[str]
    location: Optional[str]
    start_time: int
    end_time: int
    all_day: bool = False
    is_recurrence_instance: bool = False
    is_override: bool = False
    recurrence_id: Optional[int] = None
    timezone: Optional[str] = None


@dataclass
class SyncProgress:
    """Progress snapshot of the run currently in flight."""
    phase: str
    total_events: int = 0
    processed_events: int = 0
    created_events: int = 0
    updated_events: int = 0
    skipped_events: int = 0
    error_events: int = 0
    removed_events: int = 0
    message: Optional[str] = None
    cleanup_details: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data['message'] is None:
            del data['message']
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncProgress':
        return cls(
            phase=data.get('phase', 'completed'),
            total_events=int(data.get('total_events', 0)),
            processed_events=int(data.get('processed_events', 0)),
            created_events=int(data.get('created_events', 0)),
            updated_events=int(data.get('updated_events', 0)),
            skipped_events=int(data.get('skipped_events', 0)),
            error_events=int(data.get('error_events', 0)),
            removed_events=int(data.get('removed_events', 0)),
            message=data.get('message'),
            cleanup_details=list(data.get('cleanup_details', []))
        )


@dataclass
class SyncConfiguration:
    """One ICS feed configured by a group."""
    sync_id: str
    group_id: str
    name: str
    ics_url: str
    is_active: bool
    created_by: str
    created_at: int
    updated_at: int
    last_sync_at: Optional[int] = None
    last_sync_status: Optional[str] = None
    last_sync_error: Optional[str] = None
    current_sync_started_at: Optional[int] = None
    sync_progress: Optional[SyncProgress] = None
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    avg_sync_duration_ms: int = 0

    @property
    def is_currently_running(self) -> bool:
        return self.last_sync_status == 'running'

    @property
    def success_rate(self) -> int:
        if not self.total_syncs:
            return 0
        return round(self.successful_syncs / self.total_syncs * 100)


@dataclass
class SyncHistoryEntry:
    """Audit record written once a run reaches a terminal state."""
    calendar_sync_id: str
    sync_started_at: int
    sync_completed_at: int
    status: str
    progress: SyncProgress
    duration_ms: int
    error_message: Optional[str] = None
    metadata: Dict[str, int] = field(default_factory=dict)


@dataclass
class SyncOutcome:
    """Result of a single successful sync run."""
    calendar_sync_id: str
    duration_ms: int
    progress: SyncProgress
    events: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SyncSettings:
    """Tunables for fetching, windowing and progress reporting."""
    fetch_timeout: int = 30
    lookback_days: int = 730
    lookahead_days: int = 90
    retention_days: int = 7
    progress_interval: int = 10
    max_cleanup_details: int = 10
    stale_run_minutes: int = 15
    default_duration_ms: int = 2 * 60 * 60 * 1000
