"""Queue Manager: creation, submission and reconciliation of queued work.

The manager owns every record mutation. Image requests become remote batch
jobs, video requests become long-running operations; both are tracked as
persisted records and reconciled by polling the remote job client, either on
demand (``select``) or in bulk (``refresh_all``).

Failure handling:
- A failed submission marks the record ``failed`` with the error text
- A failed status query is logged and the record is left untouched; only a
  remote verdict can fail a submitted record
- Every transition re-reads the stored record first, so a record deleted or
  resolved in the meantime is never resurrected or regressed
"""

import asyncio
import logging
from typing import List, Optional, Set

from tqdm import tqdm

from ..logging_conf import reset_record_context, set_record_context
from .backends import CanvasSurface, RecordStore, RemoteJobClient
from .models import (
    ImageQueueRecord,
    ImageQueueRequest,
    QueueRecord,
    QueueRequest,
    QueueStatus,
    SafetySetting,
    VideoQueueRecord,
    VideoQueueRequest,
    can_transition,
    utcnow,
)
from .payloads import build_image_request, build_video_request
from .store import DEFAULT_KEY_PREFIX, DEFAULT_SCHEMA_VERSION, image_store, video_store

logger = logging.getLogger(__name__)

BATCH_SUCCEEDED = "JOB_STATE_SUCCEEDED"
BATCH_FAILED_STATES = frozenset({"JOB_STATE_FAILED", "JOB_STATE_CANCELLED"})

NO_IMAGES_ERROR = "no images returned"
VIDEO_FAILED_ERROR = "Video generation failed"


def batch_failure_message(state: str) -> str:
    """``JOB_STATE_CANCELLED`` -> ``cancelled``."""
    return state.removeprefix("JOB_STATE_").lower()


class QueueManager:
    """Single entry point for queued image and video work.

    Args:
        backend: Durable key-value store holding both record namespaces
        client: Remote job client used for submission and polling
        canvas: Surface finished results are loaded into by ``select``
        key_prefix: Store key prefix
        schema_version: Store key version segment
        image_model: Default image model when a record names none
        video_model: Default video model when a record names none
        safety_settings: Safety settings sent with every image job

    Attributes:
        records: Merged image and video records from the last ``list_all``,
            newest first
    """

    def __init__(
        self,
        backend: RecordStore,
        client: RemoteJobClient,
        canvas: Optional[CanvasSurface] = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        image_model: Optional[str] = None,
        video_model: Optional[str] = None,
        safety_settings: Optional[List[SafetySetting]] = None,
    ):
        self.client = client
        self.canvas = canvas
        self.images = image_store(backend, prefix=key_prefix, version=schema_version)
        self.videos = video_store(backend, prefix=key_prefix, version=schema_version)
        self.image_model = image_model
        self.video_model = video_model
        self.safety_settings = safety_settings
        self.records: List[QueueRecord] = []
        self._submissions: Set[asyncio.Task] = set()
        self._in_flight: Set[str] = set()

    @classmethod
    def from_config(cls, config, backend: RecordStore, client: RemoteJobClient, canvas: Optional[CanvasSurface] = None):
        """Build a manager from a StudioConfig."""
        return cls(
            backend,
            client,
            canvas=canvas,
            key_prefix=config.storage.key_prefix,
            schema_version=config.storage.schema_version,
            image_model=config.generation.image_model,
            video_model=config.generation.video_model,
            safety_settings=config.generation.safety_settings,
        )

    def _store_for(self, record):
        return self.videos if record.is_video else self.images

    # --- Creation & submission ---

    async def create(self, request: QueueRequest) -> QueueRecord:
        """Persist a new ``pending`` record for ``request`` (no network)."""
        if isinstance(request, VideoQueueRequest):
            record = VideoQueueRecord.from_request(request)
        elif isinstance(request, ImageQueueRequest):
            record = ImageQueueRecord.from_request(request)
        else:
            raise TypeError(f"Unsupported request type: {type(request).__name__}")

        await self._store_for(record).save(record)
        logger.info(f"Queued {record.kind} record {record.id}")
        return record

    async def create_and_submit(self, request: QueueRequest) -> str:
        """Persist the request, then submit it in the background.

        The record is stored before this coroutine returns; the remote call
        runs as a task awaited by ``drain()``.

        Returns:
            The new record id

        Raises:
            ValidationError: If the request is invalid (nothing is persisted)
        """
        record = await self.create(request)
        self._in_flight.add(record.id)
        task = asyncio.create_task(self._submit_once(record), name=f"submit-{record.id}")
        self._submissions.add(task)
        task.add_done_callback(self._submissions.discard)
        return record.id

    async def drain(self) -> None:
        """Wait for every outstanding background submission."""
        while self._submissions:
            await asyncio.gather(*list(self._submissions))

    async def submit(self, record: QueueRecord) -> Optional[QueueRecord]:
        """Send a ``pending`` record to the remote side.

        Returns:
            The record after its transition (``submitted`` or ``failed``), or
            None when the record vanished or was already resolved
        """
        token = set_record_context(record.id)
        try:
            try:
                fields = await self._send(record)
            except Exception as e:  # noqa: BLE001
                error = str(e) or type(e).__name__
                logger.warning(f"Submission of {record.id} failed: {error}")
                return await self._transition(record, QueueStatus.FAILED, error=error, completed_at=utcnow())

            logger.info(f"Record {record.id} submitted as {next(iter(fields.values()))}")
            return await self._transition(record, QueueStatus.SUBMITTED, submitted_at=utcnow(), **fields)
        finally:
            reset_record_context(token)

    async def _submit_once(self, record: QueueRecord) -> Optional[QueueRecord]:
        """Submit ``record`` while its id is marked in flight (already marked by the caller)."""
        try:
            return await self.submit(record)
        finally:
            self._in_flight.discard(record.id)

    async def _send(self, record: QueueRecord) -> dict:
        if record.is_video:
            payload = build_video_request(record, default_model=self.video_model)
            submission = await self.client.start_video_generation(payload)
            return {"remote_operation_name": submission.operation_name}

        payload = build_image_request(
            record, default_model=self.image_model, safety_settings=self.safety_settings
        )
        if record.kind == "edit":
            submission = await self.client.submit_batch_edit(payload)
        else:
            submission = await self.client.submit_batch_generate(payload)
        return {"remote_job_name": submission.batch_name}

    async def retry(self, record_id: Optional[str] = None) -> List[QueueRecord]:
        """Re-submit records left ``pending`` (e.g. after a crash).

        Args:
            record_id: Only retry this record; None retries every pending record

        Returns:
            Records after their submission attempt
        """
        if record_id is not None:
            record = await self.get(record_id)
            candidates = [record] if record is not None else []
        else:
            candidates = await self.list_all()

        results = []
        for record in candidates:
            if QueueStatus(record.status) != QueueStatus.PENDING:
                logger.debug(f"Skipping retry of {record.id}, status is {record.status}")
                continue
            if record.id in self._in_flight:
                logger.info(f"Skipping retry of {record.id}, a submission is already in flight")
                continue
            self._in_flight.add(record.id)
            updated = await self._submit_once(record)
            if updated is not None:
                results.append(updated)
        return results

    # --- Reading ---

    async def get(self, record_id: str) -> Optional[QueueRecord]:
        """Fresh read of a record from either namespace."""
        record = await self.images.get(record_id)
        if record is None:
            record = await self.videos.get(record_id)
        return record

    async def list_all(self) -> List[QueueRecord]:
        """All records, images and videos merged, newest first."""
        records = await self.images.list_all() + await self.videos.list_all()
        records.sort(key=lambda r: r.created_at, reverse=True)
        self.records = records
        return records

    async def delete(self, record_id: str) -> None:
        """Remove a record from both namespaces (idempotent)."""
        await self.images.delete(record_id)
        await self.videos.delete(record_id)
        self.records = [r for r in self.records if r.id != record_id]
        logger.info(f"Deleted record {record_id}")

    # --- Reconciliation ---

    async def select(self, record_id: str) -> Optional[QueueRecord]:
        """Bring a record up to date and show its result on the canvas.

        Always works from a fresh store read. A succeeded record is loaded
        without touching the network; a non-terminal record that has a remote
        identifier is polled exactly once.

        Returns:
            The current record, or None when it does not exist
        """
        record = await self.get(record_id)
        if record is None:
            logger.info(f"Record {record_id} not found")
            return None

        status = QueueStatus(record.status)
        if status == QueueStatus.SUCCEEDED:
            self._load_on_canvas(record)
            return record

        if record.is_terminal or not record.remote_name:
            return record

        updated = await self._safe_poll(record)
        if updated is None:
            return record
        if QueueStatus(updated.status) == QueueStatus.SUCCEEDED:
            self._load_on_canvas(updated)
        return updated

    async def refresh_all(self, show_progress: bool = False) -> List[QueueRecord]:
        """Poll every in-flight record once, then reload the merged list.

        Records are polled sequentially; a failure on one record never stops
        the others.
        """
        targets = [r for r in self.records if not r.is_terminal and r.remote_name]
        for record in tqdm(targets, desc="Refreshing queue", unit="record", disable=not show_progress):
            await self._safe_poll(record)
        return await self.list_all()

    async def _safe_poll(self, record: QueueRecord) -> Optional[QueueRecord]:
        token = set_record_context(record.id)
        try:
            return await self._poll(record)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Status check for {record.id} failed, will retry later: {e}")
            return None
        finally:
            reset_record_context(token)

    async def _poll(self, record: QueueRecord) -> Optional[QueueRecord]:
        """One status query for ``record``; returns the transitioned record or None."""
        if record.is_video:
            return await self._poll_video(record)
        return await self._poll_image(record)

    async def _poll_image(self, record: ImageQueueRecord) -> Optional[ImageQueueRecord]:
        status = await self.client.get_batch_status(record.remote_job_name)

        if status.state == BATCH_SUCCEEDED:
            results = await self.client.get_batch_results(record.remote_job_name)
            if not results.images:
                return await self._transition(
                    record, QueueStatus.FAILED, error=NO_IMAGES_ERROR, completed_at=utcnow()
                )
            logger.info(f"Batch {record.remote_job_name} succeeded with {len(results.images)} image(s)")
            return await self._transition(
                record, QueueStatus.SUCCEEDED, result_images=results.images, completed_at=utcnow()
            )

        if status.state in BATCH_FAILED_STATES:
            return await self._transition(
                record, QueueStatus.FAILED, error=batch_failure_message(status.state), completed_at=utcnow()
            )

        logger.debug(f"Batch {record.remote_job_name} still {status.state}")
        return None

    async def _poll_video(self, record: VideoQueueRecord) -> Optional[VideoQueueRecord]:
        status = await self.client.get_operation_status(record.remote_operation_name)

        if status.state == "SUCCEEDED":
            result = await self.client.get_operation_result(record.remote_operation_name)
            logger.info(f"Operation {record.remote_operation_name} succeeded")
            return await self._transition(
                record,
                QueueStatus.SUCCEEDED,
                result_video=result.video,
                result_mime_type=result.mime_type,
                completed_at=utcnow(),
            )

        if status.state == "FAILED":
            return await self._transition(
                record, QueueStatus.FAILED, error=status.error or VIDEO_FAILED_ERROR, completed_at=utcnow()
            )

        if status.state == "RUNNING":
            fields = {}
            if status.progress is not None:
                fields["progress_percent"] = status.progress
            return await self._transition(record, QueueStatus.PROCESSING, **fields)

        logger.debug(f"Operation {record.remote_operation_name} still {status.state}")
        return None

    async def _transition(self, record: QueueRecord, target: QueueStatus, **fields) -> Optional[QueueRecord]:
        """Apply ``target`` to the stored record if it is still a legal move."""
        store = self._store_for(record)
        fresh = await store.get(record.id)
        if fresh is None:
            logger.info(f"Record {record.id} no longer exists, dropping {target.value} update")
            return None
        if not can_transition(fresh.status, target, video=fresh.is_video):
            logger.info(f"Skipping {fresh.status} -> {target.value} for {record.id}")
            return None
        return await store.update(record.id, status=target, **fields)

    def _load_on_canvas(self, record: QueueRecord) -> None:
        """Show a record's result; a result the canvas cannot decode is logged, not raised."""
        if self.canvas is None:
            return
        try:
            if record.is_video:
                self.canvas.load_video(record.result_video, record.result_mime_type or "video/mp4")
            else:
                self.canvas.load_images(record.result_images)
        except ValueError as e:
            logger.error(f"Could not load result of {record.id} on the canvas: {e}")
