"""Storage interfaces the sync orchestrator depends on."""
from typing import Any, Dict, List, Optional, Protocol

from processor.models import SyncConfiguration, SyncHistoryEntry, SyncProgress


class EventStore(Protocol):
    """Canonical event storage owned by the host application."""

    def create_event(self, fields: Dict[str, Any]) -> str: ...

    def update_event(self, event_id: str, fields: Dict[str, Any]) -> None: ...

    def delete_event(self, event_id: str) -> None: ...

    def find_by_external_id(
        self, group_id: str, external_id: str
    ) -> Optional[Dict[str, Any]]: ...

    def find_by_owning_sync(self, sync_id: str) -> List[Dict[str, Any]]: ...


class SyncConfigStore(Protocol):
    """Persistence for sync configurations, run state and history."""

    def get_config(self, sync_id: str) -> Optional[SyncConfiguration]: ...

    def list_active(self) -> List[SyncConfiguration]: ...

    def try_begin_run(
        self,
        sync_id: str,
        started_at: int,
        progress: SyncProgress,
        stale_before: int
    ) -> None: ...

    def update_progress(
        self,
        sync_id: str,
        started_at: int,
        progress: SyncProgress,
        now: Optional[int] = None
    ) -> None: ...

    def complete_success(
        self,
        sync_id: str,
        started_at: int,
        completed_at: int,
        progress: SyncProgress,
        duration_ms: int
    ) -> None: ...

    def complete_error(
        self,
        sync_id: str,
        started_at: int,
        completed_at: int,
        error_message: str,
        duration_ms: int
    ) -> None: ...

    def cancel_run(self, sync_id: str, now: int) -> None: ...

    def append_history(self, entry: SyncHistoryEntry) -> None: ...
