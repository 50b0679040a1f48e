from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Protocol
from uuid import uuid4

from sendconnect.config import Settings
from sendconnect.errors import (
    ConfigurationError,
    NotFoundError,
    StaleTopicStatusError,
    TopicStoreError,
)
from sendconnect.models import Topic, TopicStatus

logger = logging.getLogger("sendconnect.topic_store")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TopicStore(Protocol):
    def init(self) -> None:
        ...

    def create_topic(self, *, title: str, description: str, raw_storage_key: str) -> Topic:
        ...

    def get_topic(self, topic_id: str) -> Topic | None:
        ...

    def list_topics(self) -> list[Topic]:
        ...

    def update_details(
        self, topic_id: str, *, title: str | None = None, description: str | None = None
    ) -> Topic:
        ...

    def transition_status(
        self,
        topic_id: str,
        *,
        expected: Iterable[TopicStatus],
        new_status: TopicStatus,
        pipeline_id: str | None = None,
        file_id: str | None = None,
        indexed_at: str | None = None,
    ) -> Topic:
        ...

    def probe(self) -> None:
        ...


def _status_values(expected: Iterable[TopicStatus]) -> tuple[str, ...]:
    values = tuple(TopicStatus(item).value for item in expected)
    if not values:
        raise ValueError("At least one expected status is required for a status transition.")
    return values


class SqliteTopicStore:
    """Topic table on a local sqlite file.

    Status transitions are conditional updates keyed on the prior status, so two
    indexing attempts for the same topic cannot both move it out of PENDING.
    """

    def __init__(self, database_url: str, *, now: Callable[[], str] = utc_now_iso) -> None:
        prefix = "sqlite:///"
        if not database_url.startswith(prefix):
            raise ConfigurationError("Only sqlite:/// DATABASE_URL is supported by the local topic store.")
        self._path = Path(database_url[len(prefix) :])
        self._now = now

    @contextmanager
    def get_conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.get_conn() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS topics (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    raw_storage_key TEXT NOT NULL,
                    status TEXT NOT NULL,
                    index_pipeline_id TEXT,
                    index_file_id TEXT,
                    indexed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_topics_created_at ON topics(created_at DESC);
                """
            )

    @staticmethod
    def _row_to_topic(row: sqlite3.Row) -> Topic:
        return Topic(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            raw_storage_key=row["raw_storage_key"],
            status=TopicStatus(row["status"]),
            index_pipeline_id=row["index_pipeline_id"],
            index_file_id=row["index_file_id"],
            indexed_at=row["indexed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create_topic(self, *, title: str, description: str, raw_storage_key: str) -> Topic:
        now = self._now()
        topic = Topic(
            id=str(uuid4()),
            title=title,
            description=description,
            raw_storage_key=raw_storage_key,
            status=TopicStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        with self.get_conn() as conn:
            conn.execute(
                """
                INSERT INTO topics (id, title, description, raw_storage_key, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    topic.id,
                    topic.title,
                    topic.description,
                    topic.raw_storage_key,
                    topic.status.value,
                    topic.created_at,
                    topic.updated_at,
                ),
            )
        return topic

    def get_topic(self, topic_id: str) -> Topic | None:
        with self.get_conn() as conn:
            row = conn.execute("SELECT * FROM topics WHERE id = ?", (topic_id,)).fetchone()
        return self._row_to_topic(row) if row else None

    def list_topics(self) -> list[Topic]:
        with self.get_conn() as conn:
            rows = conn.execute("SELECT * FROM topics ORDER BY created_at DESC, rowid DESC").fetchall()
        return [self._row_to_topic(row) for row in rows]

    def update_details(
        self, topic_id: str, *, title: str | None = None, description: str | None = None
    ) -> Topic:
        assignments: list[str] = []
        params: list[object] = []
        if title is not None:
            assignments.append("title = ?")
            params.append(title)
        if description is not None:
            assignments.append("description = ?")
            params.append(description)

        if assignments:
            with self.get_conn() as conn:
                cursor = conn.execute(
                    f"UPDATE topics SET {', '.join(assignments)} WHERE id = ?",
                    (*params, topic_id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError(topic_id)

        topic = self.get_topic(topic_id)
        if topic is None:
            raise NotFoundError(topic_id)
        return topic

    def transition_status(
        self,
        topic_id: str,
        *,
        expected: Iterable[TopicStatus],
        new_status: TopicStatus,
        pipeline_id: str | None = None,
        file_id: str | None = None,
        indexed_at: str | None = None,
    ) -> Topic:
        expected_values = _status_values(expected)
        assignments = ["status = ?", "updated_at = ?"]
        params: list[object] = [TopicStatus(new_status).value, self._now()]
        if pipeline_id is not None:
            assignments.append("index_pipeline_id = ?")
            params.append(pipeline_id)
        if file_id is not None:
            assignments.append("index_file_id = ?")
            params.append(file_id)
        if indexed_at is not None:
            assignments.append("indexed_at = ?")
            params.append(indexed_at)

        placeholders = ", ".join("?" for _ in expected_values)
        with self.get_conn() as conn:
            cursor = conn.execute(
                f"UPDATE topics SET {', '.join(assignments)} WHERE id = ? AND status IN ({placeholders})",
                (*params, topic_id, *expected_values),
            )
            updated = cursor.rowcount

        topic = self.get_topic(topic_id)
        if topic is None:
            raise NotFoundError(topic_id)
        if updated == 0:
            raise StaleTopicStatusError(topic_id, expected_values, topic.status.value)
        return topic

    def probe(self) -> None:
        with self.get_conn() as conn:
            conn.execute("SELECT 1").fetchone()


# DynamoDB attribute names are shared with the records written by the admin console.
_DYNAMO_FIELDS = {
    "title": "title",
    "description": "description",
    "raw_storage_key": "s3Key",
    "status": "topicStatus",
    "index_pipeline_id": "llamaCloudPipelineId",
    "index_file_id": "llamaCloudFileId",
    "indexed_at": "indexedAt",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
}


def _dynamo_error_code(exc: Exception) -> str:
    response = getattr(exc, "response", None)
    if isinstance(response, Mapping):
        error = response.get("Error")
        if isinstance(error, Mapping):
            return str(error.get("Code") or "")
    return ""


class DynamoTopicStore:
    def __init__(
        self,
        *,
        table_name: str,
        aws_region: str,
        table: Any | None = None,
        now: Callable[[], str] = utc_now_iso,
    ) -> None:
        if not table_name.strip() and table is None:
            raise ConfigurationError("DynamoDB topic store selected but TOPIC_TABLE_NAME is not configured.")
        self._table_name = table_name.strip()
        self._aws_region = aws_region
        self._table = table
        self._now = now

    def _get_table(self) -> Any:
        if self._table is not None:
            return self._table
        try:
            import boto3  # type: ignore
        except ImportError as exc:
            raise ConfigurationError("boto3 is required for the DynamoDB topic store.") from exc
        self._table = boto3.resource("dynamodb", region_name=self._aws_region).Table(self._table_name)
        return self._table

    def init(self) -> None:
        # Table lifecycle is owned by infrastructure code.
        return None

    @staticmethod
    def _item_to_topic(item: Mapping[str, Any]) -> Topic:
        values = {field: item.get(attribute) for field, attribute in _DYNAMO_FIELDS.items()}
        values["status"] = values.get("status") or TopicStatus.PENDING.value
        values["description"] = values.get("description") or ""
        created_at = values.get("created_at") or values.get("updated_at") or utc_now_iso()
        values["created_at"] = created_at
        values["updated_at"] = values.get("updated_at") or created_at
        return Topic(id=str(item["id"]), **values)

    def create_topic(self, *, title: str, description: str, raw_storage_key: str) -> Topic:
        now = self._now()
        topic = Topic(
            id=str(uuid4()),
            title=title,
            description=description,
            raw_storage_key=raw_storage_key,
            status=TopicStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        item = {"id": topic.id}
        for field, attribute in _DYNAMO_FIELDS.items():
            value = getattr(topic, field)
            if value is None:
                continue
            item[attribute] = value.value if isinstance(value, TopicStatus) else value
        try:
            self._get_table().put_item(
                Item=item,
                ConditionExpression="attribute_not_exists(#id)",
                ExpressionAttributeNames={"#id": "id"},
            )
        except Exception as exc:
            raise TopicStoreError(f"Failed to create Topic record: {exc}") from exc
        return topic

    def get_topic(self, topic_id: str) -> Topic | None:
        try:
            response = self._get_table().get_item(Key={"id": topic_id})
        except Exception as exc:
            raise TopicStoreError(f"Failed to read Topic {topic_id}: {exc}") from exc
        item = response.get("Item")
        return self._item_to_topic(item) if item else None

    def list_topics(self) -> list[Topic]:
        table = self._get_table()
        items: list[Mapping[str, Any]] = []
        scan_kwargs: dict[str, Any] = {}
        try:
            while True:
                response = table.scan(**scan_kwargs)
                items.extend(response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                scan_kwargs["ExclusiveStartKey"] = last_key
        except Exception as exc:
            raise TopicStoreError(f"Failed to list Topics: {exc}") from exc
        topics = [self._item_to_topic(item) for item in items]
        return sorted(topics, key=lambda topic: topic.created_at, reverse=True)

    def _update(
        self,
        topic_id: str,
        *,
        assignments: Mapping[str, object],
        condition: str,
        condition_values: Mapping[str, object] | None = None,
    ) -> Mapping[str, Any]:
        names = {"#id": "id"}
        values: dict[str, object] = dict(condition_values or {})
        clauses: list[str] = []
        for field, value in assignments.items():
            attribute = _DYNAMO_FIELDS[field]
            names[f"#{attribute}"] = attribute
            values[f":{attribute}"] = value
            clauses.append(f"#{attribute} = :{attribute}")
        if condition_values and any(key.startswith(":expected") for key in condition_values):
            names["#topicStatus"] = "topicStatus"
        response = self._get_table().update_item(
            Key={"id": topic_id},
            UpdateExpression="SET " + ", ".join(clauses),
            ConditionExpression=condition,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ReturnValues="ALL_NEW",
        )
        return response.get("Attributes") or {}

    def update_details(
        self, topic_id: str, *, title: str | None = None, description: str | None = None
    ) -> Topic:
        assignments: dict[str, object] = {}
        if title is not None:
            assignments["title"] = title
        if description is not None:
            assignments["description"] = description
        if not assignments:
            topic = self.get_topic(topic_id)
            if topic is None:
                raise NotFoundError(topic_id)
            return topic

        try:
            attributes = self._update(topic_id, assignments=assignments, condition="attribute_exists(#id)")
        except Exception as exc:
            if _dynamo_error_code(exc) == "ConditionalCheckFailedException":
                raise NotFoundError(topic_id) from exc
            raise TopicStoreError(f"Failed to update Topic {topic_id}: {exc}") from exc
        return self._item_to_topic({"id": topic_id, **attributes})

    def transition_status(
        self,
        topic_id: str,
        *,
        expected: Iterable[TopicStatus],
        new_status: TopicStatus,
        pipeline_id: str | None = None,
        file_id: str | None = None,
        indexed_at: str | None = None,
    ) -> Topic:
        expected_values = _status_values(expected)
        assignments: dict[str, object] = {
            "status": TopicStatus(new_status).value,
            "updated_at": self._now(),
        }
        if pipeline_id is not None:
            assignments["index_pipeline_id"] = pipeline_id
        if file_id is not None:
            assignments["index_file_id"] = file_id
        if indexed_at is not None:
            assignments["indexed_at"] = indexed_at

        condition_values = {f":expected{index}": value for index, value in enumerate(expected_values)}
        condition = "attribute_exists(#id) AND #topicStatus IN ({})".format(", ".join(condition_values))
        try:
            attributes = self._update(
                topic_id,
                assignments=assignments,
                condition=condition,
                condition_values=condition_values,
            )
        except Exception as exc:
            if _dynamo_error_code(exc) != "ConditionalCheckFailedException":
                raise TopicStoreError(f"Failed to update Topic {topic_id} status: {exc}") from exc
            current = self.get_topic(topic_id)
            if current is None:
                raise NotFoundError(topic_id) from exc
            raise StaleTopicStatusError(topic_id, expected_values, current.status.value) from exc
        return self._item_to_topic({"id": topic_id, **attributes})

    def probe(self) -> None:
        self._get_table().load()


def build_topic_store(settings: Settings) -> TopicStore:
    backend = (settings.topic_store_backend or "").strip().lower()
    if backend in {"", "local", "sqlite"}:
        return SqliteTopicStore(settings.database_url)
    if backend == "dynamodb":
        return DynamoTopicStore(table_name=settings.topic_table_name, aws_region=settings.aws_region)
    raise ConfigurationError(f"Unsupported TOPIC_STORE_BACKEND '{settings.topic_store_backend}'. Use 'local' or 'dynamodb'.")
