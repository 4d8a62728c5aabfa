"""DynamoDB-backed store for sync configurations, run state and history."""
import logging
import uuid
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from processor.models import SyncConfiguration, SyncHistoryEntry, SyncProgress
from storage.event_store import build_update_expression, from_dynamodb
from sync.exceptions import (
    ConcurrencyConflictError,
    NoRunningSyncError,
    SyncCancelledError,
    SyncNotFoundError,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('name', 'ics_url', 'is_active')


def _is_condition_failure(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException'


class DynamoDBSyncConfigStore:
    """Manager for the sync configuration and sync history tables."""

    GROUP_INDEX = 'group-index'

    def __init__(
        self,
        config_table_name: str,
        history_table_name: str,
        region_name: Optional[str] = None
    ):
        """
        Initialize DynamoDB table references.

        Args:
            config_table_name: Table keyed by ``sync_id``
            history_table_name: Table keyed by ``calendar_sync_id`` + ``sync_started_at``
            region_name: AWS region (defaults to the environment)
        """
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.config_table = self.dynamodb.Table(config_table_name)
        self.history_table = self.dynamodb.Table(history_table_name)
        logger.info(
            f"Initialized DynamoDBSyncConfigStore for tables: "
            f"{config_table_name}, {history_table_name}"
        )

    # Configuration CRUD

    def create_config(
        self,
        group_id: str,
        name: str,
        ics_url: str,
        created_by: str,
        now: int
    ) -> SyncConfiguration:
        config = SyncConfiguration(
            sync_id=str(uuid.uuid4()),
            group_id=group_id,
            name=name,
            ics_url=ics_url,
            is_active=True,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            last_sync_status='idle'
        )
        self.config_table.put_item(Item=self._config_to_item(config))
        logger.info(f"Created calendar sync {config.sync_id} for group {group_id}")
        return config

    def get_config(self, sync_id: str) -> Optional[SyncConfiguration]:
        response = self.config_table.get_item(Key={'sync_id': sync_id})
        item = response.get('Item')
        return self._item_to_config(item) if item else None

    def update_config(
        self,
        sync_id: str,
        updates: Dict[str, Any],
        now: int
    ) -> SyncConfiguration:
        """
        Apply an administrative edit.

        Args:
            sync_id: Configuration to edit
            updates: Subset of name, ics_url, is_active; None values are ignored
            now: Edit timestamp

        Returns:
            Updated configuration

        Raises:
            SyncNotFoundError: If the configuration does not exist
        """
        fields = {
            key: value for key, value in updates.items()
            if key in EDITABLE_FIELDS and value is not None
        }
        fields['updated_at'] = now

        try:
            response = self.config_table.update_item(
                Key={'sync_id': sync_id},
                ConditionExpression='attribute_exists(sync_id)',
                ReturnValues='ALL_NEW',
                **build_update_expression(fields)
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise SyncNotFoundError(f"Calendar sync {sync_id} not found") from e
            raise

        return self._item_to_config(response['Attributes'])

    def delete_config(self, sync_id: str) -> None:
        self.config_table.delete_item(Key={'sync_id': sync_id})
        logger.info(f"Deleted calendar sync {sync_id}")

    def list_by_group(self, group_id: str) -> List[SyncConfiguration]:
        items = self._paginate(
            self.config_table.query,
            IndexName=self.GROUP_INDEX,
            KeyConditionExpression=Key('group_id').eq(group_id)
        )
        return [self._item_to_config(item) for item in items]

    def list_all(self) -> List[SyncConfiguration]:
        items = self._paginate(self.config_table.scan)
        return [self._item_to_config(item) for item in items]

    def list_active(self) -> List[SyncConfiguration]:
        items = self._paginate(
            self.config_table.scan,
            FilterExpression=Attr('is_active').eq(True)
        )
        return [self._item_to_config(item) for item in items]

    def list_running(self) -> List[SyncConfiguration]:
        items = self._paginate(
            self.config_table.scan,
            FilterExpression=Attr('last_sync_status').eq('running')
        )
        return [self._item_to_config(item) for item in items]

    # Run state

    def try_begin_run(
        self,
        sync_id: str,
        started_at: int,
        progress: SyncProgress,
        stale_before: int
    ) -> None:
        """
        Atomically mark a configuration as running.

        Succeeds only if the configuration exists, is active, and has no run
        in flight. A running mark set before ``stale_before`` is treated as
        abandoned and taken over.

        Raises:
            ConcurrencyConflictError: If another run holds the configuration
        """
        try:
            self.config_table.update_item(
                Key={'sync_id': sync_id},
                UpdateExpression=(
                    'SET #status = :running, #started = :started, '
                    '#progress = :progress, #updated = :started'
                ),
                ConditionExpression=(
                    'attribute_exists(sync_id) AND #active = :true AND '
                    '(attribute_not_exists(#status) OR #status <> :running '
                    'OR #started < :stale)'
                ),
                ExpressionAttributeNames={
                    '#status': 'last_sync_status',
                    '#started': 'current_sync_started_at',
                    '#progress': 'sync_progress',
                    '#updated': 'updated_at',
                    '#active': 'is_active'
                },
                ExpressionAttributeValues={
                    ':running': 'running',
                    ':started': started_at,
                    ':progress': progress.to_dict(),
                    ':true': True,
                    ':stale': stale_before
                }
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise ConcurrencyConflictError(
                    f"A sync is already running for calendar sync {sync_id}"
                ) from e
            raise

        logger.info(f"Sync run started for {sync_id}")

    def update_progress(
        self,
        sync_id: str,
        started_at: int,
        progress: SyncProgress,
        now: Optional[int] = None
    ) -> None:
        """
        Persist a progress snapshot of the running sync.

        Args:
            sync_id: Configuration being synced
            started_at: Start time identifying the run that owns the snapshot
            progress: Snapshot to store
            now: Update timestamp

        Raises:
            SyncCancelledError: If that run is no longer the running one
        """
        self._update_running(
            sync_id, {'sync_progress': progress.to_dict()}, now, started_at
        )

    def complete_success(
        self,
        sync_id: str,
        started_at: int,
        completed_at: int,
        progress: SyncProgress,
        duration_ms: int
    ) -> None:
        """
        Record a successful run and update the running statistics.

        Raises:
            SyncCancelledError: If the run was cancelled or replaced before completing
        """
        config = self.get_config(sync_id)
        if config is None:
            raise SyncNotFoundError(f"Calendar sync {sync_id} not found")

        total_syncs = config.total_syncs + 1
        successful_syncs = config.successful_syncs + 1
        avg_duration = round(
            (config.avg_sync_duration_ms * (successful_syncs - 1) + duration_ms)
            / successful_syncs
        )

        self._update_running(sync_id, {
            'last_sync_at': completed_at,
            'last_sync_status': 'success',
            'last_sync_error': None,
            'sync_progress': None,
            'current_sync_started_at': None,
            'total_syncs': total_syncs,
            'successful_syncs': successful_syncs,
            'avg_sync_duration_ms': avg_duration
        }, completed_at, started_at)
        logger.info(f"Recorded successful sync for {sync_id}")

    def complete_error(
        self,
        sync_id: str,
        started_at: int,
        completed_at: int,
        error_message: str,
        duration_ms: int
    ) -> None:
        """
        Record a failed run, clear the run state and count the failure.

        Raises:
            SyncCancelledError: If the run was cancelled or replaced before failing
        """
        config = self.get_config(sync_id)
        if config is None:
            raise SyncNotFoundError(f"Calendar sync {sync_id} not found")

        fields = {
            'last_sync_at': completed_at,
            'last_sync_status': 'error',
            'last_sync_error': error_message,
            'sync_progress': None,
            'current_sync_started_at': None,
            'total_syncs': config.total_syncs + 1,
            'failed_syncs': config.failed_syncs + 1
        }
        self._update_running(sync_id, fields, completed_at, started_at)
        logger.info(
            f"Recorded failed sync for {sync_id}",
            extra={'duration_ms': duration_ms}
        )

    def cancel_run(self, sync_id: str, now: int) -> None:
        """
        Cancel the running sync, clearing its run state.

        Writes already committed by the run are kept.

        Raises:
            NoRunningSyncError: If no sync is running
        """
        try:
            self._update_running(sync_id, {
                'last_sync_status': 'cancelled',
                'sync_progress': None,
                'current_sync_started_at': None
            }, now)
        except SyncCancelledError as e:
            raise NoRunningSyncError("No sync is currently running") from e
        logger.info(f"Cancelled running sync for {sync_id}")

    # History

    def append_history(self, entry: SyncHistoryEntry) -> None:
        """
        Append an audit record; existing records are never overwritten.
        """
        item = {
            'calendar_sync_id': entry.calendar_sync_id,
            'sync_started_at': entry.sync_started_at,
            'sync_completed_at': entry.sync_completed_at,
            'status': entry.status,
            'progress': entry.progress.to_dict(),
            'duration_ms': entry.duration_ms,
            'metadata': dict(entry.metadata)
        }
        if entry.error_message:
            item['error_message'] = entry.error_message

        self.history_table.put_item(
            Item=item,
            ConditionExpression='attribute_not_exists(calendar_sync_id)'
        )
        logger.info(
            f"Appended {entry.status} history entry for {entry.calendar_sync_id}"
        )

    def list_history(self, sync_id: str, limit: int = 10) -> List[SyncHistoryEntry]:
        response = self.history_table.query(
            KeyConditionExpression=Key('calendar_sync_id').eq(sync_id),
            ScanIndexForward=False,
            Limit=limit
        )
        return [self._item_to_history(item) for item in response.get('Items', [])]

    def list_recent_history(self, limit: int = 20) -> List[SyncHistoryEntry]:
        items = self._paginate(self.history_table.scan)
        entries = [self._item_to_history(item) for item in items]
        entries.sort(key=lambda entry: entry.sync_started_at, reverse=True)
        return entries[:limit]

    # Statistics

    def stats_summary(self, group_id: Optional[str] = None) -> Dict[str, int]:
        """
        Aggregate sync statistics across a group's configurations (or all).
        """
        configs = self.list_by_group(group_id) if group_id else self.list_all()

        stats = {
            'total_calendars': len(configs),
            'active_calendars': sum(1 for config in configs if config.is_active),
            'total_syncs': sum(config.total_syncs for config in configs),
            'successful_syncs': sum(config.successful_syncs for config in configs),
            'failed_syncs': sum(config.failed_syncs for config in configs),
            'currently_running': sum(1 for config in configs if config.is_currently_running)
        }

        durations = [config.avg_sync_duration_ms for config in configs if config.avg_sync_duration_ms]
        stats['success_rate'] = (
            round(stats['successful_syncs'] / stats['total_syncs'] * 100)
            if stats['total_syncs'] else 0
        )
        stats['avg_sync_duration_ms'] = round(sum(durations) / len(durations)) if durations else 0
        return stats

    def _update_running(
        self,
        sync_id: str,
        fields: Dict[str, Any],
        now: Optional[int],
        started_at: Optional[int] = None
    ) -> None:
        """Update a running configuration; with ``started_at``, only while that run owns it."""
        if now is not None:
            fields = dict(fields, updated_at=now)

        kwargs = build_update_expression(fields)
        names = kwargs['ExpressionAttributeNames']
        values = kwargs.setdefault('ExpressionAttributeValues', {})
        names['#status_guard'] = 'last_sync_status'
        values[':running_guard'] = 'running'
        condition = '#status_guard = :running_guard'

        if started_at is not None:
            names['#started_guard'] = 'current_sync_started_at'
            values[':started_guard'] = started_at
            condition += ' AND #started_guard = :started_guard'

        try:
            self.config_table.update_item(
                Key={'sync_id': sync_id},
                ConditionExpression=condition,
                **kwargs
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise SyncCancelledError(
                    f"Sync for {sync_id} is no longer running"
                ) from e
            raise

    def _paginate(self, operation, **kwargs) -> List[Dict[str, Any]]:
        response = operation(**kwargs)
        items = response.get('Items', [])

        while 'LastEvaluatedKey' in response:
            response = operation(
                ExclusiveStartKey=response['LastEvaluatedKey'],
                **kwargs
            )
            items.extend(response.get('Items', []))

        return items

    def _config_to_item(self, config: SyncConfiguration) -> dict:
        item = {
            'sync_id': config.sync_id,
            'group_id': config.group_id,
            'name': config.name,
            'ics_url': config.ics_url,
            'is_active': config.is_active,
            'created_by': config.created_by,
            'created_at': config.created_at,
            'updated_at': config.updated_at,
            'total_syncs': config.total_syncs,
            'successful_syncs': config.successful_syncs,
            'failed_syncs': config.failed_syncs,
            'avg_sync_duration_ms': config.avg_sync_duration_ms
        }

        # Add optional fields if present
        optional = {
            'last_sync_at': config.last_sync_at,
            'last_sync_status': config.last_sync_status,
            'last_sync_error': config.last_sync_error,
            'current_sync_started_at': config.current_sync_started_at,
            'sync_progress': config.sync_progress.to_dict() if config.sync_progress else None
        }
        item.update({key: value for key, value in optional.items() if value is not None})
        return item

    def _item_to_config(self, item: dict) -> SyncConfiguration:
        item = from_dynamodb(item)
        progress = item.get('sync_progress')
        return SyncConfiguration(
            sync_id=item['sync_id'],
            group_id=item['group_id'],
            name=item['name'],
            ics_url=item['ics_url'],
            is_active=bool(item.get('is_active', False)),
            created_by=item.get('created_by', ''),
            created_at=item.get('created_at', 0),
            updated_at=item.get('updated_at', 0),
            last_sync_at=item.get('last_sync_at'),
            last_sync_status=item.get('last_sync_status'),
            last_sync_error=item.get('last_sync_error'),
            current_sync_started_at=item.get('current_sync_started_at'),
            sync_progress=SyncProgress.from_dict(progress) if progress else None,
            total_syncs=item.get('total_syncs', 0),
            successful_syncs=item.get('successful_syncs', 0),
            failed_syncs=item.get('failed_syncs', 0),
            avg_sync_duration_ms=item.get('avg_sync_duration_ms', 0)
        )

    def _item_to_history(self, item: dict) -> SyncHistoryEntry:
        item = from_dynamodb(item)
        return SyncHistoryEntry(
            calendar_sync_id=item['calendar_sync_id'],
            sync_started_at=item['sync_started_at'],
            sync_completed_at=item.get('sync_completed_at', 0),
            status=item['status'],
            progress=SyncProgress.from_dict(item.get('progress', {})),
            duration_ms=item.get('duration_ms', 0),
            error_message=item.get('error_message'),
            metadata=item.get('metadata', {})
        )
