"""Typed queue-record persistence over a key-value RecordStore.

Each record kind lives in its own namespace so image and video records can be
listed independently:

    {prefix}-{version}-queue-{id}         image batch jobs
    {prefix}-{version}-video-queue-{id}   video operations

Bumping ``version`` orphans old records rather than migrating them.
"""

import logging
from typing import Any, Generic, List, Optional, Type, TypeVar

from pydantic import ValidationError

from .backends import RecordStore
from .models import ImageQueueRecord, QueueEntry, VideoQueueRecord

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "nano-banana"
DEFAULT_SCHEMA_VERSION = "1.0"
IMAGE_NAMESPACE = "queue"
VIDEO_NAMESPACE = "video-queue"

RecordT = TypeVar("RecordT", bound=QueueEntry)


class QueueRecordStore(Generic[RecordT]):
    """Adapter mapping one record type onto its namespace in a RecordStore.

    Reads are validated: a stored value that no longer matches the record
    model is reported as absent (and logged), never raised to the caller.
    """

    def __init__(
        self,
        backend: RecordStore,
        record_type: Type[RecordT],
        namespace: str,
        prefix: str = DEFAULT_KEY_PREFIX,
        version: str = DEFAULT_SCHEMA_VERSION,
    ):
        self.backend = backend
        self.record_type = record_type
        self.namespace = namespace
        self.prefix = prefix
        self.version = version

    @property
    def key_prefix(self) -> str:
        return f"{self.prefix}-{self.version}-{self.namespace}-"

    def key_for(self, record_id: str) -> str:
        return f"{self.key_prefix}{record_id}"

    def _parse(self, key: str, value: Any) -> Optional[RecordT]:
        if value is None:
            return None
        try:
            return self.record_type.model_validate(value)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid {self.namespace} record at {key}: {e.error_count()} error(s)")
            return None

    async def save(self, record: RecordT) -> None:
        """Upsert the full record."""
        await self.backend.set(self.key_for(record.id), record.model_dump(mode="json"))

    async def get(self, record_id: str) -> Optional[RecordT]:
        key = self.key_for(record_id)
        return self._parse(key, await self.backend.get(key))

    async def list_all(self) -> List[RecordT]:
        """Every valid record in the namespace, newest first."""
        records = []
        for key in await self.backend.list_keys():
            if not key.startswith(self.key_prefix):
                continue
            record = self._parse(key, await self.backend.get(key))
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    async def update(self, record_id: str, **fields) -> Optional[RecordT]:
        """Read-modify-write through validation.

        Returns:
            The updated record, or None when the record does not exist
            (silent no-op, e.g. it was deleted concurrently)

        Raises:
            ValidationError: If the updated record violates a model invariant
        """
        current = await self.get(record_id)
        if current is None:
            logger.debug(f"Update skipped, {self.namespace} record {record_id} not found")
            return None
        updated = current.with_updates(**fields)
        await self.save(updated)
        return updated

    async def delete(self, record_id: str) -> None:
        await self.backend.delete(self.key_for(record_id))


def image_store(backend: RecordStore, **kwargs) -> QueueRecordStore[ImageQueueRecord]:
    return QueueRecordStore(backend, ImageQueueRecord, IMAGE_NAMESPACE, **kwargs)


def video_store(backend: RecordStore, **kwargs) -> QueueRecordStore[VideoQueueRecord]:
    return QueueRecordStore(backend, VideoQueueRecord, VIDEO_NAMESPACE, **kwargs)
