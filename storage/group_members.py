"""Read-only view of group membership roles."""
import logging
from typing import Optional

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class DynamoDBGroupMembership:
    """Membership table keyed by ``group_id`` + ``user_id`` with a ``role``."""

    ADMIN_ROLE = 'admin'

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)

    def is_group_admin(self, user_id: str, group_id: str) -> bool:
        """
        Check whether a user administers a group.

        Args:
            user_id: User to check
            group_id: Group the user must administer

        Returns:
            True if a membership with the admin role exists
        """
        try:
            response = self.table.get_item(
                Key={'group_id': group_id, 'user_id': user_id}
            )
        except ClientError as e:
            logger.error(f"Error reading membership of {user_id} in {group_id}: {e}")
            raise

        member = response.get('Item')
        return bool(member) and member.get('role') == self.ADMIN_ROLE
