"""Administrative operations on calendar sync configurations."""
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from processor.models import SyncConfiguration, SyncHistoryEntry
from storage.sync_config_store import DynamoDBSyncConfigStore
from sync.exceptions import PermissionDeniedError, SyncNotFoundError
from sync.orchestrator import current_time_ms

logger = logging.getLogger(__name__)


@dataclass
class CallerIdentity:
    """Authenticated user performing an administrative call."""
    user_id: str

    @classmethod
    def from_subject(cls, subject: str) -> 'CallerIdentity':
        """
        Build an identity from a ``userId|sessionId`` subject.

        Raises:
            PermissionDeniedError: If the subject carries no user id
        """
        user_id = (subject or '').split('|')[0].strip()
        if not user_id:
            raise PermissionDeniedError("Not authenticated")
        return cls(user_id=user_id)


class CalendarSyncAdmin:
    """Configuration management and status views for group admins."""

    def __init__(
        self,
        config_store: DynamoDBSyncConfigStore,
        is_group_admin: Callable[[str, str], bool],
        clock: Optional[Callable[[], int]] = None
    ):
        """
        Initialize the admin facade.

        Args:
            config_store: Store holding configurations and history
            is_group_admin: Returns True if the user administers the group
            clock: Returns the current time in epoch milliseconds
        """
        self.config_store = config_store
        self.is_group_admin = is_group_admin
        self.clock = clock or current_time_ms

    # Mutations

    def add_calendar_sync(
        self,
        caller: CallerIdentity,
        group_id: str,
        name: str,
        ics_url: str
    ) -> str:
        """
        Register a new ICS feed for a group.

        Returns:
            The new configuration id

        Raises:
            PermissionDeniedError: If the caller is not a group admin
            ValueError: If the name or URL is empty
        """
        self._require_admin(caller, group_id, 'add calendar sync configurations')
        if not name or not name.strip():
            raise ValueError("Calendar name is required")
        if not ics_url or not ics_url.strip():
            raise ValueError("ICS URL is required")

        config = self.config_store.create_config(
            group_id, name.strip(), ics_url.strip(), caller.user_id, self.clock()
        )
        logger.info(
            f"Calendar sync '{config.name}' added",
            extra={'calendar_sync_id': config.sync_id, 'user_id': caller.user_id}
        )
        return config.sync_id

    def update_calendar_sync(
        self,
        caller: CallerIdentity,
        sync_id: str,
        name: Optional[str] = None,
        ics_url: Optional[str] = None,
        is_active: Optional[bool] = None
    ) -> SyncConfiguration:
        config = self._get_or_raise(sync_id)
        self._require_admin(caller, config.group_id, 'update calendar sync configurations')

        return self.config_store.update_config(
            sync_id,
            {'name': name, 'ics_url': ics_url, 'is_active': is_active},
            self.clock()
        )

    def delete_calendar_sync(self, caller: CallerIdentity, sync_id: str) -> None:
        config = self._get_or_raise(sync_id)
        self._require_admin(caller, config.group_id, 'delete calendar sync configurations')
        self.config_store.delete_config(sync_id)

    def cancel_sync(self, caller: CallerIdentity, sync_id: str) -> None:
        """
        Cancel the sync currently running for a configuration.

        The run notices at its next progress flush and stops.

        Raises:
            SyncNotFoundError: If the configuration does not exist
            PermissionDeniedError: If the caller is not a group admin
            NoRunningSyncError: If no sync is running
        """
        config = self._get_or_raise(sync_id)
        self._require_admin(caller, config.group_id, 'cancel syncs')
        self.config_store.cancel_run(sync_id, self.clock())
        logger.info(
            f"Sync cancelled for calendar '{config.name}'",
            extra={'calendar_sync_id': sync_id, 'user_id': caller.user_id}
        )

    # Queries

    def get_sync_status(self, sync_id: str) -> Dict[str, Any]:
        return self._status_view(self._get_or_raise(sync_id), self.clock())

    def get_group_sync_statuses(self, group_id: str) -> List[Dict[str, Any]]:
        now = self.clock()
        return [self._status_view(config, now) for config in self.config_store.list_by_group(group_id)]

    def get_sync_history(self, sync_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        return [self._history_view(entry) for entry in self.config_store.list_history(sync_id, limit)]

    def get_recent_sync_activity(self, limit: int = 20) -> List[Dict[str, Any]]:
        """
        Return the latest history entries across all configurations.

        Entries whose configuration has since been deleted are left out.
        """
        activity = []
        configs: Dict[str, Optional[SyncConfiguration]] = {}

        for entry in self.config_store.list_recent_history(limit):
            if entry.calendar_sync_id not in configs:
                configs[entry.calendar_sync_id] = self.config_store.get_config(entry.calendar_sync_id)
            config = configs[entry.calendar_sync_id]
            if config is None:
                continue

            view = self._history_view(entry)
            view['calendar_name'] = config.name
            view['group_id'] = config.group_id
            activity.append(view)

        return activity

    def get_running_syncs(self) -> List[Dict[str, Any]]:
        now = self.clock()
        return [
            {
                'id': config.sync_id,
                'name': config.name,
                'group_id': config.group_id,
                'current_sync_started_at': config.current_sync_started_at,
                'sync_progress': config.sync_progress.to_dict() if config.sync_progress else None,
                'running_time_ms': (
                    now - config.current_sync_started_at if config.current_sync_started_at else 0
                )
            }
            for config in self.config_store.list_running()
        ]

    def get_stats_summary(self, group_id: Optional[str] = None) -> Dict[str, int]:
        return self.config_store.stats_summary(group_id)

    def _get_or_raise(self, sync_id: str) -> SyncConfiguration:
        config = self.config_store.get_config(sync_id)
        if config is None:
            raise SyncNotFoundError(f"Calendar sync {sync_id} not found")
        return config

    def _require_admin(self, caller: CallerIdentity, group_id: str, action: str) -> None:
        if not self.is_group_admin(caller.user_id, group_id):
            logger.warning(
                f"User {caller.user_id} denied: not an admin of group {group_id}"
            )
            raise PermissionDeniedError(f"Only group admins can {action}")

    @staticmethod
    def _status_view(config: SyncConfiguration, now: int) -> Dict[str, Any]:
        return {
            'id': config.sync_id,
            'name': config.name,
            'is_active': config.is_active,
            'last_sync_at': config.last_sync_at,
            'last_sync_status': config.last_sync_status,
            'last_sync_error': config.last_sync_error,
            'current_sync_started_at': config.current_sync_started_at,
            'sync_progress': config.sync_progress.to_dict() if config.sync_progress else None,
            'stats': {
                'total_syncs': config.total_syncs,
                'successful_syncs': config.successful_syncs,
                'failed_syncs': config.failed_syncs,
                'avg_sync_duration_ms': config.avg_sync_duration_ms,
                'success_rate': config.success_rate
            },
            'is_currently_running': config.is_currently_running,
            'time_since_last_sync': now - config.last_sync_at if config.last_sync_at else None
        }

    @staticmethod
    def _history_view(entry: SyncHistoryEntry) -> Dict[str, Any]:
        view = asdict(entry)
        view['progress'] = entry.progress.to_dict()
        return view
