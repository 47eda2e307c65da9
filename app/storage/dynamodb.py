import boto3
import json
from typing import Any, Optional, Tuple
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError
from app.settings import settings
import logging

log = logging.getLogger(__name__)


class WriteConflict(Exception):
    """Raised when a conditional write loses against a concurrent writer."""
    def __init__(self, key: str):
        super().__init__(key)
        self.key = key


# -------------------------
# DynamoDB Service
# -------------------------
class DynamoDBService:
    """
        The table is used as a plain key-value store: every item is
        {key, value (JSON string), version}. No secondary indexes, no queries.
        Writes are conditional on the version last read by the caller.
    """
    def __init__(self):
        session = boto3.session.Session(region_name=settings.aws_region)
        kwargs = {
            "aws_access_key_id": settings.aws_access_key_id,
            "aws_secret_access_key": settings.aws_secret_access_key,
        }
        if settings.aws_endpoint_url:
            kwargs["endpoint_url"] = settings.aws_endpoint_url

        self.resource = session.resource("dynamodb", **kwargs)
        log.info("Initialized DynamoDB resource")

        # Ensure table exists at initialization
        self.ensure_table()
        self.table = self.resource.Table(settings.dynamodb_table)

    # Refer here: https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/dynamodb/client/create_table.html
    def ensure_table(self):
        try:
            table = self.resource.Table(settings.dynamodb_table)
            table.load()
        except ClientError:
            table = self.resource.create_table(
                TableName=settings.dynamodb_table,
                KeySchema=[{"AttributeName": "key", "KeyType": "HASH"}],
                AttributeDefinitions=[
                    {"AttributeName": "key", "AttributeType": "S"},
                ],
                ProvisionedThroughput={"ReadCapacityUnits": 5, "WriteCapacityUnits": 5},
            )
            table.wait_until_exists()
            log.info("Created table %s", settings.dynamodb_table)

    def get(self, key: str) -> Optional[Tuple[Any, int]]:
        """Returns (value, version) or None when the key is absent."""
        resp = self.table.get_item(Key={"key": key}, ConsistentRead=True)
        item = resp.get("Item")
        if not item:
            return None
        return json.loads(item["value"]), int(item["version"])

    def put(self, key: str, value: Any, expected_version: Optional[int]) -> int:
        """
            Writes value if the stored version still equals expected_version
            (None means the key must not exist yet). Returns the new version.
        """
        if expected_version is None:
            condition = Attr("key").not_exists()
            version = 1
        else:
            condition = Attr("version").eq(expected_version)
            version = expected_version + 1
        try:
            self.table.put_item(
                Item={"key": key, "value": json.dumps(value), "version": version},
                ConditionExpression=condition,
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise WriteConflict(key) from e
            raise
        log.debug("Put %s (version %d)", key, version)
        return version

    def delete(self, key: str, expected_version: Optional[int] = None):
        kwargs = {"Key": {"key": key}}
        if expected_version is not None:
            kwargs["ConditionExpression"] = Attr("version").eq(expected_version)
        try:
            self.table.delete_item(**kwargs)
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise WriteConflict(key) from e
            raise
        log.debug("Deleted %s", key)

    def close(self):
        log.info("Closed DynamoDB resource")
