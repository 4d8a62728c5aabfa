"""DynamoDB-backed event store for feed-sourced calendar events."""
import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


def build_update_expression(fields: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build UpdateItem arguments that SET non-None fields and REMOVE None ones.

    Attribute names are always aliased: ``name``, ``location`` and ``status``
    are DynamoDB reserved words.

    Args:
        fields: Attribute name to new value

    Returns:
        Keyword arguments for ``Table.update_item``
    """
    set_clauses = []
    remove_clauses = []
    names = {}
    values = {}

    for index, (attribute, value) in enumerate(sorted(fields.items())):
        alias = f"#a{index}"
        names[alias] = attribute
        if value is None:
            remove_clauses.append(alias)
        else:
            values[f":v{index}"] = value
            set_clauses.append(f"{alias} = :v{index}")

    expression = []
    if set_clauses:
        expression.append('SET ' + ', '.join(set_clauses))
    if remove_clauses:
        expression.append('REMOVE ' + ', '.join(remove_clauses))

    kwargs = {
        'UpdateExpression': ' '.join(expression),
        'ExpressionAttributeNames': names
    }
    if values:
        kwargs['ExpressionAttributeValues'] = values
    return kwargs


def from_dynamodb(value: Any) -> Any:
    """Convert boto3 Decimals back to ints, recursing into maps and lists."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {key: from_dynamodb(item) for key, item in value.items()}
    if isinstance(value, list):
        return [from_dynamodb(item) for item in value]
    return value


class DynamoDBEventStore:
    """Event store on a DynamoDB table keyed by ``event_id``."""

    EXTERNAL_ID_INDEX = 'group-external-index'
    SYNC_INDEX = 'calendar-sync-index'

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the events table
            region_name: AWS region (defaults to the environment)
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBEventStore for table: {table_name}")

    def create_event(self, fields: Dict[str, Any]) -> str:
        """
        Insert a new event.

        Args:
            fields: Event attributes; None values are not stored

        Returns:
            Generated event_id
        """
        event_id = str(uuid.uuid4())
        now = int(time.time() * 1000)

        item = {key: value for key, value in fields.items() if value is not None}
        item.update({
            'event_id': event_id,
            'created_at': now,
            'updated_at': now
        })

        self.table.put_item(Item=item)
        logger.debug(f"Created event {event_id} ({fields.get('external_id')})")
        return event_id

    def update_event(self, event_id: str, fields: Dict[str, Any]) -> None:
        """
        Update an existing event in place.

        Args:
            event_id: Event to update
            fields: Attributes to set; None values remove the attribute

        Raises:
            ClientError: If the event does not exist or the write fails
        """
        updates = {
            key: value for key, value in fields.items()
            if key not in ('event_id', 'created_at')
        }
        updates['updated_at'] = int(time.time() * 1000)

        self.table.update_item(
            Key={'event_id': event_id},
            ConditionExpression='attribute_exists(event_id)',
            **build_update_expression(updates)
        )
        logger.debug(f"Updated event {event_id}")

    def delete_event(self, event_id: str) -> None:
        self.table.delete_item(Key={'event_id': event_id})
        logger.debug(f"Deleted event {event_id}")

    def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        response = self.table.get_item(Key={'event_id': event_id})
        item = response.get('Item')
        return from_dynamodb(item) if item else None

    def find_by_external_id(
        self,
        group_id: str,
        external_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Look up the event synced for an external identifier within a group.

        Returns:
            Event item, or None if not synced yet
        """
        items = self._query(
            IndexName=self.EXTERNAL_ID_INDEX,
            KeyConditionExpression=(
                Key('group_id').eq(group_id) & Key('external_id').eq(external_id)
            )
        )
        return items[0] if items else None

    def find_by_owning_sync(self, sync_id: str) -> List[Dict[str, Any]]:
        """
        Retrieve every event created by a sync configuration.

        Returns:
            Event items ordered by start_time
        """
        items = self._query(
            IndexName=self.SYNC_INDEX,
            KeyConditionExpression=Key('calendar_sync_id').eq(sync_id)
        )
        logger.info(f"Retrieved {len(items)} events owned by sync {sync_id}")
        return items

    def _query(self, **kwargs) -> List[Dict[str, Any]]:
        try:
            response = self.table.query(**kwargs)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.query(
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                    **kwargs
                )
                items.extend(response.get('Items', []))

            return [from_dynamodb(item) for item in items]

        except ClientError as e:
            logger.error(f"Error querying {kwargs.get('IndexName')} on {self.table_name}: {e}")
            raise
