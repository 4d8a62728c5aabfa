"""Orchestrates one calendar feed sync run end to end."""
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

import pytz

from feed.ics_fetcher import IcsFeedFetcher
from feed.ics_parser import parse_ics_content
from processor.event_processor import EventProcessor
from processor.models import (
    EventInstance,
    SyncConfiguration,
    SyncHistoryEntry,
    SyncOutcome,
    SyncProgress,
    SyncSettings,
)
from storage.interfaces import EventStore, SyncConfigStore
from sync.exceptions import SyncCancelledError, SyncInactiveError, SyncNotFoundError

logger = logging.getLogger(__name__)

# Event attributes compared to decide whether a stored event needs a write
CONTENT_FIELDS = (
    'title', 'description', 'location', 'start_time', 'end_time',
    'all_day', 'calendar_source', 'calendar_sync_id', 'recurring_event_id',
    'instance_date'
)


def current_time_ms() -> int:
    return int(time.time() * 1000)


class CalendarSyncOrchestrator:
    """Runs fetch, parse, expand, reconcile and cleanup for a configuration."""

    def __init__(
        self,
        event_store: EventStore,
        config_store: SyncConfigStore,
        fetcher: Optional[IcsFeedFetcher] = None,
        processor: Optional[EventProcessor] = None,
        settings: Optional[SyncSettings] = None,
        clock: Optional[Callable[[], int]] = None
    ):
        """
        Initialize the orchestrator with its collaborators.

        Args:
            event_store: Store the synced events are written to
            config_store: Store holding configurations, run state and history
            fetcher: Feed fetcher (built from settings if omitted)
            processor: Event processor (built from settings if omitted)
            settings: Sync tunables
            clock: Returns the current time in epoch milliseconds
        """
        self.settings = settings or SyncSettings()
        self.event_store = event_store
        self.config_store = config_store
        self.fetcher = fetcher or IcsFeedFetcher(timeout=self.settings.fetch_timeout)
        self.processor = processor or EventProcessor(self.settings)
        self.clock = clock or current_time_ms

    def sync_calendar(self, sync_id: str) -> SyncOutcome:
        """
        Synchronize one configuration with its ICS feed.

        Args:
            sync_id: Configuration to run

        Returns:
            SyncOutcome with final counts and the saved events

        Raises:
            SyncNotFoundError: If the configuration does not exist
            SyncInactiveError: If the configuration is disabled
            ConcurrencyConflictError: If a run is already in progress
            SyncCancelledError: If the run was cancelled or replaced by a newer run
            TransportError: If the feed could not be fetched
        """
        config = self.config_store.get_config(sync_id)
        if config is None:
            raise SyncNotFoundError(f"Calendar sync {sync_id} not found")
        if not config.is_active:
            raise SyncInactiveError(f"Calendar sync {sync_id} is inactive")

        started_at = self.clock()
        stale_before = started_at - self.settings.stale_run_minutes * 60 * 1000
        progress = SyncProgress(phase='fetching', message='Fetching calendar data...')
        self.config_store.try_begin_run(sync_id, started_at, progress, stale_before)

        logger.info(
            f"Sync started for calendar '{config.name}'",
            extra={'calendar_sync_id': sync_id, 'group_id': config.group_id}
        )

        metadata: Dict[str, int] = {}
        try:
            instances = self._fetch_and_expand(config, started_at, progress, metadata)
            now = self.clock()
            saved_events, seen_ids = self._process_instances(
                config, started_at, instances, progress, metadata
            )
            self._cleanup_orphans(config, started_at, seen_ids, now, progress, metadata)
            return self._complete(config, started_at, progress, metadata, saved_events)
        except SyncCancelledError:
            self._record_cancelled(sync_id, started_at, progress, metadata)
            raise
        except Exception as e:
            self._record_error(
                sync_id, started_at, str(e) or type(e).__name__, progress, metadata
            )
            raise

    def sync_all_active(self) -> List[Dict[str, Any]]:
        """
        Sync every active configuration one after another.

        A failing configuration is reported and the batch continues.

        Returns:
            One result dict per configuration
        """
        results = []
        configs = self.config_store.list_active()
        logger.info(f"Syncing {len(configs)} active calendars")

        for config in configs:
            try:
                outcome = self.sync_calendar(config.sync_id)
                results.append({
                    'calendar_id': config.sync_id,
                    'name': config.name,
                    'success': True,
                    'duration_ms': outcome.duration_ms,
                    'progress': outcome.progress.to_dict()
                })
            except Exception as e:
                logger.error(
                    f"Sync failed for calendar '{config.name}': {e}",
                    extra={'calendar_sync_id': config.sync_id, 'error_type': type(e).__name__}
                )
                results.append({
                    'calendar_id': config.sync_id,
                    'name': config.name,
                    'success': False,
                    'error': str(e) or type(e).__name__,
                    'error_type': type(e).__name__
                })

        return results

    def _fetch_and_expand(
        self,
        config: SyncConfiguration,
        started_at: int,
        progress: SyncProgress,
        metadata: Dict[str, int]
    ) -> List[EventInstance]:
        fetch_started = self.clock()
        ics_content = self.fetcher.fetch(config.ics_url)
        metadata['fetch_time'] = self.clock() - fetch_started
        metadata['ics_file_size'] = len(ics_content.encode('utf-8'))

        progress.phase = 'parsing'
        progress.message = 'Parsing calendar events...'
        self._flush(config.sync_id, started_at, progress)

        parse_started = self.clock()
        parsed_events = parse_ics_content(ics_content)
        instances = self.processor.process_events(parsed_events, self.clock())
        metadata['parse_time'] = self.clock() - parse_started

        return instances

    def _process_instances(
        self,
        config: SyncConfiguration,
        started_at: int,
        instances: List[EventInstance],
        progress: SyncProgress,
        metadata: Dict[str, int]
    ):
        progress.phase = 'processing'
        progress.total_events = len(instances)
        progress.message = f"Processing {len(instances)} events..."
        self._flush(config.sync_id, started_at, progress)

        process_started = self.clock()
        sync_generation = process_started
        saved_events = []
        seen_ids: Set[str] = set()

        for index, instance in enumerate(instances):
            try:
                if instance.external_id in seen_ids:
                    progress.skipped_events += 1
                else:
                    seen_ids.add(instance.external_id)
                    saved_events.append(
                        self._reconcile_instance(config, instance, sync_generation, progress)
                    )
            except Exception as e:
                logger.error(
                    f"Error processing event {instance.external_id}: {e}",
                    extra={'calendar_sync_id': config.sync_id}
                )
                progress.error_events += 1

            progress.processed_events = index + 1
            if (index + 1) % self.settings.progress_interval == 0 or index == len(instances) - 1:
                progress.message = f"Processed {index + 1}/{len(instances)} events..."
                self._flush(config.sync_id, started_at, progress)

        metadata['process_time'] = self.clock() - process_started
        return saved_events, seen_ids

    def _reconcile_instance(
        self,
        config: SyncConfiguration,
        instance: EventInstance,
        sync_generation: int,
        progress: SyncProgress
    ) -> Dict[str, Any]:
        fields = self._event_fields(config, instance, sync_generation)
        existing = self.event_store.find_by_external_id(config.group_id, instance.external_id)

        if existing is None:
            event_id = self.event_store.create_event(fields)
            progress.created_events += 1
            action = 'created'
        elif not self._event_changed(existing, fields):
            event_id = existing['event_id']
            progress.skipped_events += 1
            action = 'skipped'
        else:
            event_id = existing['event_id']
            self.event_store.update_event(event_id, fields)
            progress.updated_events += 1
            action = 'updated'

        return dict(fields, event_id=event_id, action=action)

    def _cleanup_orphans(
        self,
        config: SyncConfiguration,
        started_at: int,
        seen_ids: Set[str],
        now: int,
        progress: SyncProgress,
        metadata: Dict[str, int]
    ) -> None:
        """Delete future events of this sync that vanished from the feed.

        Past events are kept so attendance records stay attached.
        """
        progress.phase = 'cleanup'
        progress.message = 'Cleaning up orphaned events...'
        self._flush(config.sync_id, started_at, progress)

        cleanup_started = self.clock()
        orphans = [
            event for event in self.event_store.find_by_owning_sync(config.sync_id)
            if event.get('external_id')
            and event['external_id'] not in seen_ids
            and event.get('start_time', 0) >= now
        ]

        for event in orphans:
            try:
                self.event_store.delete_event(event['event_id'])
            except Exception as e:
                logger.error(f"Failed to remove orphaned event {event['event_id']}: {e}")
                progress.error_events += 1
                continue

            progress.removed_events += 1
            progress.cleanup_details.append(self._describe_event(event))
            progress.cleanup_details = progress.cleanup_details[-self.settings.max_cleanup_details:]
            logger.info(f"Removed orphaned future event: {event.get('title')}")

        metadata['cleanup_time'] = self.clock() - cleanup_started

    def _complete(
        self,
        config: SyncConfiguration,
        started_at: int,
        progress: SyncProgress,
        metadata: Dict[str, int],
        saved_events: List[Dict[str, Any]]
    ) -> SyncOutcome:
        completed_at = self.clock()
        duration_ms = completed_at - started_at
        progress.phase = 'completed'
        progress.processed_events = progress.total_events
        progress.message = f"Sync completed successfully in {duration_ms / 1000:.1f}s"

        self.config_store.complete_success(
            config.sync_id, started_at, completed_at, progress, duration_ms
        )
        self._append_history(SyncHistoryEntry(
            calendar_sync_id=config.sync_id,
            sync_started_at=started_at,
            sync_completed_at=completed_at,
            status='success',
            progress=progress,
            duration_ms=duration_ms,
            metadata=metadata
        ))

        logger.info(
            f"Sync completed for calendar '{config.name}'",
            extra={
                'calendar_sync_id': config.sync_id,
                'duration_ms': duration_ms,
                'created': progress.created_events,
                'updated': progress.updated_events,
                'skipped': progress.skipped_events,
                'errors': progress.error_events,
                'removed': progress.removed_events
            }
        )

        return SyncOutcome(
            calendar_sync_id=config.sync_id,
            duration_ms=duration_ms,
            progress=progress,
            events=saved_events
        )

    def _record_error(
        self,
        sync_id: str,
        started_at: int,
        error_message: str,
        progress: SyncProgress,
        metadata: Dict[str, int]
    ) -> None:
        completed_at = self.clock()
        duration_ms = completed_at - started_at
        logger.error(
            f"Sync failed for {sync_id}: {error_message}",
            extra={'calendar_sync_id': sync_id, 'duration_ms': duration_ms}
        )

        progress.message = f"Sync failed: {error_message}"
        try:
            self.config_store.complete_error(
                sync_id, started_at, completed_at, error_message, duration_ms
            )
        except SyncCancelledError:
            # The run was cancelled or replaced before it failed
            self._record_cancelled(sync_id, started_at, progress, metadata)
            return
        except Exception as e:
            logger.error(
                f"Failed to record sync failure for {sync_id}: {e}",
                extra={'calendar_sync_id': sync_id, 'error_type': type(e).__name__}
            )
            return

        self._append_history(SyncHistoryEntry(
            calendar_sync_id=sync_id,
            sync_started_at=started_at,
            sync_completed_at=completed_at,
            status='error',
            error_message=error_message,
            progress=progress,
            duration_ms=duration_ms,
            metadata=metadata
        ))

    def _record_cancelled(
        self,
        sync_id: str,
        started_at: int,
        progress: SyncProgress,
        metadata: Dict[str, int]
    ) -> None:
        completed_at = self.clock()
        logger.warning(f"Sync for {sync_id} was cancelled during {progress.phase}")
        progress.message = 'Sync cancelled'
        self._append_history(SyncHistoryEntry(
            calendar_sync_id=sync_id,
            sync_started_at=started_at,
            sync_completed_at=completed_at,
            status='cancelled',
            progress=progress,
            duration_ms=completed_at - started_at,
            metadata=metadata
        ))

    def _append_history(self, entry: SyncHistoryEntry) -> None:
        """Append a terminal history entry after the run state was settled.

        A storage failure here is logged; it must not change the run outcome
        or replace the error being propagated.
        """
        try:
            self.config_store.append_history(entry)
        except Exception as e:
            logger.error(
                f"Failed to append {entry.status} history for {entry.calendar_sync_id}: {e}",
                extra={'calendar_sync_id': entry.calendar_sync_id, 'error_type': type(e).__name__}
            )

    def _flush(self, sync_id: str, started_at: int, progress: SyncProgress) -> None:
        self.config_store.update_progress(sync_id, started_at, progress, self.clock())

    @staticmethod
    def _event_fields(
        config: SyncConfiguration,
        instance: EventInstance,
        sync_generation: int
    ) -> Dict[str, Any]:
        return {
            'group_id': config.group_id,
            'title': instance.title,
            'description': instance.description,
            'location': instance.location,
            'start_time': instance.start_time,
            'end_time': instance.end_time,
            'all_day': instance.all_day,
            'calendar_source': config.ics_url,
            'external_id': instance.external_id,
            'calendar_sync_id': config.sync_id,
            'sync_generation': sync_generation,
            'recurring_event_id': instance.uid,
            'instance_date': instance.start_time
        }

    @staticmethod
    def _event_changed(existing: Dict[str, Any], fields: Dict[str, Any]) -> bool:
        return any(existing.get(name) != fields.get(name) for name in CONTENT_FIELDS)

    @staticmethod
    def _describe_event(event: Dict[str, Any]) -> str:
        start = datetime.fromtimestamp(event.get('start_time', 0) / 1000, tz=pytz.utc)
        return f"{event.get('title', 'Untitled Event')} ({start.strftime('%Y-%m-%d %H:%M')} UTC)"
