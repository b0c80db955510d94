"""Tenant-scoped key-value storage.

The engine treats its database as an opaque key-value store addressed by a
partition key (``pk``, always tenant-scoped, e.g. ``RULES#{company_id}``) and
a sort key (``sk``). Two backends are provided:

- InMemoryKeyValueStore: dict-backed, for tests and local development
- DynamoDBKeyValueStore: AWS DynamoDB via boto3, with retry logic

Based on the boto3 DynamoDB resource API:
https://boto3.amazonaws.com/v1/documentation/api/latest/guide/dynamodb.html
"""

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ledger.shared.config import Settings

logger = logging.getLogger(__name__)

Item = dict[str, Any]


class StorageError(Exception):
    """Raised when the storage backend fails to complete an operation."""


class KeyValueStore(ABC):
    """Abstract tenant-scoped key-value store.

    Implementations must offer read-your-writes consistency within a
    partition. No multi-item transactions are assumed.
    """

    @abstractmethod
    def get_item(self, pk: str, sk: str) -> Item | None:
        """Fetch a single item, or None if it does not exist."""

    @abstractmethod
    def put_item(self, pk: str, sk: str, item: Item) -> None:
        """Create or replace an item."""

    @abstractmethod
    def update_item(self, pk: str, sk: str, updates: Item) -> None:
        """Set attributes on an existing item (creating it if missing)."""

    @abstractmethod
    def increment(
        self,
        pk: str,
        sk: str,
        field: str,
        amount: int = 1,
        updates: Item | None = None,
    ) -> None:
        """Atomically add ``amount`` to a numeric attribute, optionally setting others."""

    @abstractmethod
    def delete_item(self, pk: str, sk: str) -> None:
        """Delete an item. Deleting a missing item is not an error."""

    @abstractmethod
    def query(
        self,
        pk: str,
        sk_prefix: str | None = None,
        sk_between: tuple[str, str] | None = None,
        limit: int | None = None,
    ) -> list[Item]:
        """Return items in a partition ordered by sort key.

        Args:
            pk: Partition key
            sk_prefix: Only items whose sort key starts with this prefix
            sk_between: Only items with ``low <= sk <= high`` (inclusive)
            limit: Maximum number of items to return

        Returns:
            List of items (copies, safe to mutate)
        """

    def is_available(self) -> bool:
        """Check if the backend is configured and usable."""
        return True


class InMemoryKeyValueStore(KeyValueStore):
    """Dict-backed store guarded by a lock."""

    def __init__(self) -> None:
        self._partitions: dict[str, dict[str, Item]] = {}
        self._lock = threading.Lock()

    def get_item(self, pk: str, sk: str) -> Item | None:
        with self._lock:
            item = self._partitions.get(pk, {}).get(sk)
            return copy.deepcopy(item) if item is not None else None

    def put_item(self, pk: str, sk: str, item: Item) -> None:
        with self._lock:
            self._partitions.setdefault(pk, {})[sk] = {**copy.deepcopy(item), "pk": pk, "sk": sk}

    def update_item(self, pk: str, sk: str, updates: Item) -> None:
        with self._lock:
            partition = self._partitions.setdefault(pk, {})
            item = partition.setdefault(sk, {"pk": pk, "sk": sk})
            item.update(copy.deepcopy(updates))

    def increment(
        self,
        pk: str,
        sk: str,
        field: str,
        amount: int = 1,
        updates: Item | None = None,
    ) -> None:
        with self._lock:
            partition = self._partitions.setdefault(pk, {})
            item = partition.setdefault(sk, {"pk": pk, "sk": sk})
            item[field] = item.get(field, 0) + amount
            if updates:
                item.update(copy.deepcopy(updates))

    def delete_item(self, pk: str, sk: str) -> None:
        with self._lock:
            self._partitions.get(pk, {}).pop(sk, None)

    def query(
        self,
        pk: str,
        sk_prefix: str | None = None,
        sk_between: tuple[str, str] | None = None,
        limit: int | None = None,
    ) -> list[Item]:
        with self._lock:
            partition = self._partitions.get(pk, {})
            keys = sorted(partition)
            if sk_prefix is not None:
                keys = [k for k in keys if k.startswith(sk_prefix)]
            if sk_between is not None:
                low, high = sk_between
                keys = [k for k in keys if low <= k <= high]
            if limit is not None:
                keys = keys[:limit]
            return [copy.deepcopy(partition[k]) for k in keys]


def _to_dynamo(item: Item) -> Item:
    """Convert a JSON-compatible item to DynamoDB types (floats become Decimal)."""
    return json.loads(json.dumps(item, default=str), parse_float=Decimal)


class DynamoDBKeyValueStore(KeyValueStore):
    """DynamoDB-backed store.

    Uses a single table with string partition key ``pk`` and sort key ``sk``.
    Transient client errors are retried with exponential backoff before being
    surfaced as StorageError.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize store.

        Args:
            settings: Application settings with DynamoDB configuration
        """
        self.settings = settings
        self._table: Any | None = None

    def _get_table(self) -> Any:
        """Get or create the DynamoDB table resource (lazy initialization)."""
        if self._table is None:
            resource = boto3.resource(
                "dynamodb",
                region_name=self.settings.aws_region,
                endpoint_url=self.settings.dynamodb_endpoint_url,
            )
            self._table = resource.Table(self.settings.dynamodb_table)
            logger.info(
                f"DynamoDB table initialized: {self.settings.dynamodb_table} "
                f"({self.settings.aws_region})"
            )
        return self._table

    def is_available(self) -> bool:
        return bool(self.settings.dynamodb_table)

    @retry(
        retry=retry_if_exception_type(ClientError),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=0.2, max=5),
        reraise=True,
    )
    def _call(self, operation: str, **kwargs: Any) -> Any:
        return getattr(self._get_table(), operation)(**kwargs)

    def _execute(self, operation: str, **kwargs: Any) -> Any:
        try:
            return self._call(operation, **kwargs)
        except ClientError as e:
            error = e.response.get("Error", {})
            detail = f"{error.get('Code')} - {error.get('Message')}"
            logger.error(f"DynamoDB {operation} failed: {detail}")
            raise StorageError(f"DynamoDB error: {detail}") from e
        except BotoCoreError as e:
            logger.error(f"DynamoDB {operation} failed: {e}")
            raise StorageError(str(e)) from e

    def get_item(self, pk: str, sk: str) -> Item | None:
        response = self._execute("get_item", Key={"pk": pk, "sk": sk})
        return response.get("Item")

    def put_item(self, pk: str, sk: str, item: Item) -> None:
        self._execute("put_item", Item=_to_dynamo({**item, "pk": pk, "sk": sk}))

    def update_item(self, pk: str, sk: str, updates: Item) -> None:
        if not updates:
            return
        names = {f"#a{i}": name for i, name in enumerate(updates)}
        values = _to_dynamo({f":v{i}": value for i, value in enumerate(updates.values())})
        expression = "SET " + ", ".join(f"#a{i} = :v{i}" for i in range(len(updates)))
        self._execute(
            "update_item",
            Key={"pk": pk, "sk": sk},
            UpdateExpression=expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )

    def increment(
        self,
        pk: str,
        sk: str,
        field: str,
        amount: int = 1,
        updates: Item | None = None,
    ) -> None:
        updates = updates or {}
        names = {"#counter": field}
        values: Item = {":amount": amount}
        set_clauses = []
        for i, (name, value) in enumerate(updates.items()):
            names[f"#a{i}"] = name
            values[f":v{i}"] = value
            set_clauses.append(f"#a{i} = :v{i}")

        expression = "ADD #counter :amount"
        if set_clauses:
            expression += " SET " + ", ".join(set_clauses)

        self._execute(
            "update_item",
            Key={"pk": pk, "sk": sk},
            UpdateExpression=expression,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=_to_dynamo(values),
        )

    def delete_item(self, pk: str, sk: str) -> None:
        self._execute("delete_item", Key={"pk": pk, "sk": sk})

    def query(
        self,
        pk: str,
        sk_prefix: str | None = None,
        sk_between: tuple[str, str] | None = None,
        limit: int | None = None,
    ) -> list[Item]:
        condition = Key("pk").eq(pk)
        if sk_prefix is not None:
            condition = condition & Key("sk").begins_with(sk_prefix)
        if sk_between is not None:
            condition = condition & Key("sk").between(*sk_between)

        kwargs: dict[str, Any] = {"KeyConditionExpression": condition}
        items: list[Item] = []

        while True:
            if limit is not None:
                kwargs["Limit"] = limit - len(items)
            response = self._execute("query", **kwargs)
            items.extend(response.get("Items", []))

            last_key = response.get("LastEvaluatedKey")
            if not last_key or (limit is not None and len(items) >= limit):
                break
            kwargs["ExclusiveStartKey"] = last_key

        return items
