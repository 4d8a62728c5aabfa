"""AWS Lambda handler for external calendar sync."""
import json
import logging
import os
import time
from typing import Dict, Any, Tuple

from processor.models import SyncSettings
from storage.event_store import DynamoDBEventStore
from storage.group_members import DynamoDBGroupMembership
from storage.sync_config_store import DynamoDBSyncConfigStore
from sync.admin import CalendarSyncAdmin, CallerIdentity
from sync.exceptions import (
    CalendarSyncError,
    ConcurrencyConflictError,
    NoRunningSyncError,
    PermissionDeniedError,
    SyncCancelledError,
    SyncInactiveError,
    SyncNotFoundError,
    TransportError,
)
from sync.orchestrator import CalendarSyncOrchestrator

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRIBUTES = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}

STATUS_CODES = (
    (SyncNotFoundError, 404),
    (PermissionDeniedError, 403),
    (ConcurrencyConflictError, 409),
    (NoRunningSyncError, 409),
    (SyncInactiveError, 409),
    (SyncCancelledError, 409),
    (TransportError, 502),
    (ValueError, 400),
)


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including extra= context."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RECORD_ATTRIBUTES and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def load_settings() -> SyncSettings:
    """Read sync tunables from environment variables."""
    return SyncSettings(
        fetch_timeout=int(os.environ.get('TIMEOUT_SECONDS', '30')),
        lookback_days=int(os.environ.get('LOOKBACK_DAYS', '730')),
        lookahead_days=int(os.environ.get('LOOKAHEAD_DAYS', '90')),
        retention_days=int(os.environ.get('RETENTION_DAYS', '7')),
        progress_interval=int(os.environ.get('PROGRESS_INTERVAL', '10')),
        stale_run_minutes=int(os.environ.get('STALE_RUN_MINUTES', '15'))
    )


def build_components(settings: SyncSettings) -> Tuple[CalendarSyncOrchestrator, CalendarSyncAdmin]:
    """Wire the DynamoDB stores into the orchestrator and admin facade."""
    config_table = os.environ.get('SYNC_CONFIG_TABLE', 'calendar-syncs')
    history_table = os.environ.get('SYNC_HISTORY_TABLE', 'calendar-sync-history')
    events_table = os.environ.get('EVENTS_TABLE', 'events')
    members_table = os.environ.get('GROUP_MEMBERS_TABLE', 'group-members')

    event_store = DynamoDBEventStore(table_name=events_table)
    config_store = DynamoDBSyncConfigStore(
        config_table_name=config_table,
        history_table_name=history_table
    )
    membership = DynamoDBGroupMembership(table_name=members_table)

    orchestrator = CalendarSyncOrchestrator(event_store, config_store, settings=settings)
    admin = CalendarSyncAdmin(config_store, membership.is_group_admin)
    return orchestrator, admin


def status_code_for(error: Exception) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {'statusCode': status_code, 'body': json.dumps(body)}


def _require_sync_id(event: Dict[str, Any]) -> str:
    sync_id = event.get('calendar_sync_id')
    if not sync_id:
        raise ValueError("calendar_sync_id is required")
    return sync_id


def handle_action(
    event: Dict[str, Any],
    orchestrator: CalendarSyncOrchestrator,
    admin: CalendarSyncAdmin
) -> Dict[str, Any]:
    """
    Dispatch a Lambda payload to the matching operation.

    Args:
        event: Payload with an optional ``action`` (defaults to ``sync_all``)
        orchestrator: Sync orchestrator
        admin: Administrative facade

    Returns:
        Response body for a successful call

    Raises:
        ValueError: If the action is unknown or arguments are missing
        CalendarSyncError: Propagated from the operation
    """
    action = event.get('action') or 'sync_all'

    if action == 'sync_all':
        results = orchestrator.sync_all_active()
        succeeded = sum(1 for result in results if result['success'])
        return {
            'message': f"Synced {succeeded}/{len(results)} calendars",
            'results': results
        }

    if action == 'sync':
        outcome = orchestrator.sync_calendar(_require_sync_id(event))
        return {
            'message': 'Sync completed successfully',
            'calendar_sync_id': outcome.calendar_sync_id,
            'duration_ms': outcome.duration_ms,
            'progress': outcome.progress.to_dict(),
            'events_synced': len(outcome.events)
        }

    if action == 'cancel':
        sync_id = _require_sync_id(event)
        caller = CallerIdentity.from_subject(event.get('subject', ''))
        admin.cancel_sync(caller, sync_id)
        return {'message': 'Sync cancelled', 'calendar_sync_id': sync_id}

    if action == 'status':
        return admin.get_sync_status(_require_sync_id(event))

    raise ValueError(f"Unknown action: {action}")


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for external calendar sync.

    Args:
        event: EventBridge schedule or direct invocation payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and a JSON body
    """
    log_level = os.environ.get('LOG_LEVEL', 'INFO')
    setup_logging(log_level)
    logger = logging.getLogger(__name__)

    event = event or {}
    start_time = time.time()
    logger.info(
        "Lambda execution started",
        extra={'action': event.get('action') or 'sync_all'}
    )

    try:
        settings = load_settings()
        orchestrator, admin = build_components(settings)
        body = handle_action(event, orchestrator, admin)

    except (CalendarSyncError, ValueError) as e:
        duration = time.time() - start_time
        status_code = status_code_for(e)
        logger.warning(
            f"Lambda request rejected: {str(e)}",
            extra={'error_type': type(e).__name__, 'status_code': status_code}
        )
        return _response(status_code, {
            'message': 'Request failed',
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {
            'message': 'Sync failed',
            'error': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })

    duration = time.time() - start_time
    body['duration_seconds'] = round(duration, 2)
    logger.info(
        "Lambda execution completed successfully",
        extra={'duration_seconds': round(duration, 2)}
    )
    return _response(200, body)
