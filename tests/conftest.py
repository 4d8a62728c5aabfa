"""Shared fixtures for DynamoDB-backed tests."""
import boto3
import pytest
from moto import mock_aws

from storage.event_store import DynamoDBEventStore
from storage.sync_config_store import DynamoDBSyncConfigStore

EVENTS_TABLE = 'test-events'
CONFIG_TABLE = 'test-calendar-syncs'
HISTORY_TABLE = 'test-calendar-sync-history'
MEMBERS_TABLE = 'test-group-members'

THROUGHPUT = {'ReadCapacityUnits': 5, 'WriteCapacityUnits': 5}


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Keep boto3 away from real credentials and pin the region."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


def _create_events_table(dynamodb):
    return dynamodb.create_table(
        TableName=EVENTS_TABLE,
        KeySchema=[
            {'AttributeName': 'event_id', 'KeyType': 'HASH'}
        ],
        AttributeDefinitions=[
            {'AttributeName': 'event_id', 'AttributeType': 'S'},
            {'AttributeName': 'group_id', 'AttributeType': 'S'},
            {'AttributeName': 'external_id', 'AttributeType': 'S'},
            {'AttributeName': 'calendar_sync_id', 'AttributeType': 'S'},
            {'AttributeName': 'start_time', 'AttributeType': 'N'}
        ],
        GlobalSecondaryIndexes=[
            {
                'IndexName': 'group-external-index',
                'KeySchema': [
                    {'AttributeName': 'group_id', 'KeyType': 'HASH'},
                    {'AttributeName': 'external_id', 'KeyType': 'RANGE'}
                ],
                'Projection': {'ProjectionType': 'ALL'},
                'ProvisionedThroughput': THROUGHPUT
            },
            {
                'IndexName': 'calendar-sync-index',
                'KeySchema': [
                    {'AttributeName': 'calendar_sync_id', 'KeyType': 'HASH'},
                    {'AttributeName': 'start_time', 'KeyType': 'RANGE'}
                ],
                'Projection': {'ProjectionType': 'ALL'},
                'ProvisionedThroughput': THROUGHPUT
            }
        ],
        BillingMode='PROVISIONED',
        ProvisionedThroughput=THROUGHPUT
    )


def _create_config_table(dynamodb):
    return dynamodb.create_table(
        TableName=CONFIG_TABLE,
        KeySchema=[
            {'AttributeName': 'sync_id', 'KeyType': 'HASH'}
        ],
        AttributeDefinitions=[
            {'AttributeName': 'sync_id', 'AttributeType': 'S'},
            {'AttributeName': 'group_id', 'AttributeType': 'S'}
        ],
        GlobalSecondaryIndexes=[
            {
                'IndexName': 'group-index',
                'KeySchema': [
                    {'AttributeName': 'group_id', 'KeyType': 'HASH'}
                ],
                'Projection': {'ProjectionType': 'ALL'},
                'ProvisionedThroughput': THROUGHPUT
            }
        ],
        BillingMode='PROVISIONED',
        ProvisionedThroughput=THROUGHPUT
    )


def _create_history_table(dynamodb):
    return dynamodb.create_table(
        TableName=HISTORY_TABLE,
        KeySchema=[
            {'AttributeName': 'calendar_sync_id', 'KeyType': 'HASH'},
            {'AttributeName': 'sync_started_at', 'KeyType': 'RANGE'}
        ],
        AttributeDefinitions=[
            {'AttributeName': 'calendar_sync_id', 'AttributeType': 'S'},
            {'AttributeName': 'sync_started_at', 'AttributeType': 'N'}
        ],
        BillingMode='PAY_PER_REQUEST'
    )


def _create_members_table(dynamodb):
    return dynamodb.create_table(
        TableName=MEMBERS_TABLE,
        KeySchema=[
            {'AttributeName': 'group_id', 'KeyType': 'HASH'},
            {'AttributeName': 'user_id', 'KeyType': 'RANGE'}
        ],
        AttributeDefinitions=[
            {'AttributeName': 'group_id', 'AttributeType': 'S'},
            {'AttributeName': 'user_id', 'AttributeType': 'S'}
        ],
        BillingMode='PAY_PER_REQUEST'
    )


@pytest.fixture
def dynamodb_tables():
    """Create mock events, configuration, history and membership tables."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
        tables = {
            'events': _create_events_table(dynamodb),
            'config': _create_config_table(dynamodb),
            'history': _create_history_table(dynamodb),
            'members': _create_members_table(dynamodb)
        }
        yield tables


@pytest.fixture
def event_store(dynamodb_tables):
    return DynamoDBEventStore(EVENTS_TABLE, region_name='us-east-1')


@pytest.fixture
def config_store(dynamodb_tables):
    return DynamoDBSyncConfigStore(CONFIG_TABLE, HISTORY_TABLE, region_name='us-east-1')


@pytest.fixture
def clock():
    """Clock starting at 2025-05-01T10:00:00Z that ticks 1 ms per reading."""
    class Clock:
        def __init__(self):
            self.now = 1746093600000

        def __call__(self):
            self.now += 1
            return self.now

        def advance(self, ms):
            self.now += ms

    return Clock()
