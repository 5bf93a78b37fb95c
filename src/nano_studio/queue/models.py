"""Pydantic models for queue records and remote job payloads.

This module defines the type-safe models used throughout the queue system:
the user-facing request payloads, the two persisted record families (image
batch jobs and video operations) and the shapes returned by the remote job
client. All models use Pydantic for validation and serialization.
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, List, Literal, Optional, Union

from pydantic import BaseModel, Field, conlist, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .hashing import decode_payload

logger = logging.getLogger(__name__)

AspectRatio = Literal["auto", "1:1", "2:3", "3:2", "3:4", "4:3", "9:16", "16:9"]
ResolutionTier = Literal["1K", "2K", "4K"]
VideoAspectRatio = Literal["16:9", "9:16"]
VideoResolution = Literal["720p", "1080p"]
VideoDuration = Literal[4, 6, 8]

MAX_REFERENCE_IMAGES = 10
MAX_VIDEO_REFERENCE_IMAGES = 3


def utcnow() -> datetime:
    """Timezone-aware 'now' used for every record timestamp."""
    return datetime.now(timezone.utc)


def new_record_id() -> str:
    return uuid.uuid4().hex


class QueueStatus(str, Enum):
    """Queue record states shared by image and video records.

    State transitions:
        pending → submitted     (remote accepted the job)
        pending → failed        (remote rejected the submission)
        submitted → processing  (video only: operation reports RUNNING)
        submitted → succeeded   (results fetched)
        submitted → failed      (remote verdict: failed / cancelled)
        processing → succeeded
        processing → failed
    Terminal states (succeeded, failed) never change again.
    """

    PENDING = "pending"  # Persisted, not yet accepted by the remote side
    SUBMITTED = "submitted"  # Remote job/operation name assigned
    PROCESSING = "processing"  # Video operation is running
    SUCCEEDED = "succeeded"  # Results stored on the record
    FAILED = "failed"  # Terminal failure, error stored on the record


TERMINAL_STATES = frozenset({QueueStatus.SUCCEEDED, QueueStatus.FAILED})

# States that require the remote identifier to be present
REMOTE_STATES = frozenset({QueueStatus.SUBMITTED, QueueStatus.PROCESSING, QueueStatus.SUCCEEDED})

_STATUS_RANK = {
    QueueStatus.PENDING: 0,
    QueueStatus.SUBMITTED: 1,
    QueueStatus.PROCESSING: 2,
    QueueStatus.SUCCEEDED: 3,
    QueueStatus.FAILED: 3,
}


def can_transition(current: Union[QueueStatus, str], target: Union[QueueStatus, str], video: bool = False) -> bool:
    """Return True when moving from ``current`` to ``target`` keeps status monotonic.

    Only ``processing`` may repeat (progress updates); a second ``submitted``
    would overwrite the first remote name. Images never enter ``processing``.
    """
    current = QueueStatus(current)
    target = QueueStatus(target)

    if current in TERMINAL_STATES:
        return False
    if target == QueueStatus.PROCESSING and not video:
        return False
    if current == target:
        return current == QueueStatus.PROCESSING
    return _STATUS_RANK[target] > _STATUS_RANK[current]


# --- Request payloads (user input, before a record exists) ---


class ImageQueueRequest(BaseModel):
    """Image generate/edit request as captured from the UI."""

    kind: Literal["generate", "edit"] = Field(default="generate", description="Generate or edit")
    prompt: str = Field(..., min_length=1, description="Prompt or edit instruction")
    aspect_ratio: Optional[AspectRatio] = Field(default=None, description="Output aspect ratio")
    resolution_tier: Optional[ResolutionTier] = Field(default=None, description="Output size tier")
    reference_images: Optional[conlist(str, max_length=MAX_REFERENCE_IMAGES)] = Field(
        default=None, description="Base64 style/content references"
    )
    original_image: Optional[str] = Field(default=None, description="Base64 image being edited")
    mask_image: Optional[str] = Field(default=None, description="Base64 mask (white = edit region)")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    seed: Optional[int] = Field(default=None)
    variant_count: int = Field(default=1, ge=1, description="Sub-requests in the batch job")
    model: Optional[str] = Field(default=None, description="Image model id (None = configured default)")

    @model_validator(mode="after")
    def check_edit_inputs(self):
        """Edit requests need an original image; masks only make sense for edits."""
        if self.kind == "edit" and not self.original_image:
            raise ValueError("edit requests require original_image")
        if self.kind == "generate" and (self.original_image or self.mask_image):
            raise ValueError("generate requests cannot carry original_image or mask_image")
        return self


class VideoQueueRequest(BaseModel):
    """Video generate/extend request.

    ``kind`` is derived: a request carrying ``source_video`` is an extension,
    and extension is incompatible with frame guidance, so the frame images are
    cleared whenever a source video is present.
    """

    kind: Literal["video-generate", "video-extend"] = Field(default="video-generate")
    prompt: str = Field(..., min_length=1)
    negative_prompt: Optional[str] = None
    aspect_ratio: Optional[VideoAspectRatio] = None
    resolution: Optional[VideoResolution] = None
    duration_seconds: Optional[VideoDuration] = None
    start_frame_image: Optional[str] = Field(default=None, description="Base64 first frame")
    last_frame_image: Optional[str] = Field(default=None, description="Base64 last frame")
    reference_images: Optional[List[str]] = Field(default=None, description="Base64 style references")
    source_video: Optional[str] = Field(default=None, description="Base64 MP4 to extend")
    seed: Optional[int] = None
    model: Optional[str] = Field(default=None, description="Video model id (None = configured default)")

    @model_validator(mode="before")
    @classmethod
    def normalize_video_mode(cls, data):
        if not isinstance(data, dict):
            return data

        data = dict(data)
        if data.get("source_video"):
            if data.get("start_frame_image") or data.get("last_frame_image"):
                logger.warning("source_video set; clearing frame images (extension mode)")
            data["start_frame_image"] = None
            data["last_frame_image"] = None
            data["kind"] = "video-extend"
        else:
            data["kind"] = "video-generate"
        return data

    @model_validator(mode="after")
    def keep_extension_frameless(self):
        """Re-apply the extension rule after field assignment on a built model.

        Each assignment is guarded so re-validation settles after one pass.
        """
        if self.source_video and (self.start_frame_image or self.last_frame_image):
            logger.warning("source_video set; dropping frame images (extension mode)")
            if self.start_frame_image:
                self.start_frame_image = None
            if self.last_frame_image:
                self.last_frame_image = None
        kind = "video-extend" if self.source_video else "video-generate"
        if self.kind != kind:
            self.kind = kind
        return self


# --- Persisted records ---


class QueueEntry(BaseModel):
    """Capability shared by every queue record.

    Listing, merging and sorting code only touches these fields; submission
    and polling dispatch on the concrete record type.
    """

    id: str = Field(default_factory=new_record_id, description="Client-generated unique id")
    prompt: str = Field(..., min_length=1, description="Prompt or edit instruction")
    status: QueueStatus = Field(default=QueueStatus.PENDING, description="Current record state")
    error: Optional[str] = Field(default=None, description="Failure description (failed only)")
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")
    submitted_at: Optional[datetime] = Field(default=None, description="Remote acceptance time")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal resolution time")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True  # Serialize enums as strings

    is_video: ClassVar[bool] = False

    @property
    def remote_name(self) -> Optional[str]:
        raise NotImplementedError

    @property
    def has_result(self) -> bool:
        raise NotImplementedError

    @property
    def is_terminal(self) -> bool:
        return QueueStatus(self.status) in TERMINAL_STATES

    @model_validator(mode="after")
    def check_status_fields(self):
        """Result iff succeeded, error iff failed, remote name once accepted."""
        status = QueueStatus(self.status)

        if status == QueueStatus.SUCCEEDED and not self.has_result:
            raise ValueError("succeeded records must carry a result")
        if status != QueueStatus.SUCCEEDED and self.has_result:
            raise ValueError(f"{status.value} records cannot carry a result")
        if (status == QueueStatus.FAILED) != bool(self.error):
            raise ValueError("error must be set if and only if status is failed")
        if status in REMOTE_STATES and not self.remote_name:
            raise ValueError(f"{status.value} records require a remote job/operation name")
        if status == QueueStatus.PROCESSING and not self.is_video:
            raise ValueError("only video records can be processing")
        return self

    def with_updates(self, **fields):
        """Return a re-validated copy with ``fields`` applied."""
        data = self.model_dump()
        data.update(fields)
        data["id"] = self.id
        return type(self).model_validate(data)


class ImageQueueRecord(QueueEntry, ImageQueueRequest):
    """Image batch job record (Gemini batch API)."""

    remote_job_name: Optional[str] = Field(default=None, description="Remote batch job name")
    result_images: Optional[List[str]] = Field(default=None, description="Base64 result images")

    @property
    def remote_name(self) -> Optional[str]:
        return self.remote_job_name

    @property
    def has_result(self) -> bool:
        return bool(self.result_images)

    @classmethod
    def from_request(cls, request: ImageQueueRequest, **fields) -> "ImageQueueRecord":
        return cls(**request.model_dump(exclude_none=True), **fields)


class VideoQueueRecord(QueueEntry, VideoQueueRequest):
    """Video long-running operation record (Veo)."""

    remote_operation_name: Optional[str] = Field(default=None, description="Remote operation name")
    progress_percent: Optional[float] = Field(
        default=None, ge=0.0, le=1.0, description="Fractional progress reported by the operation"
    )
    result_video: Optional[str] = Field(default=None, description="Base64 result video")
    result_mime_type: Optional[str] = Field(default=None, description="MIME type of result_video")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True
        validate_assignment = True  # Plain assignment still obeys extension mode

    is_video: ClassVar[bool] = True

    @property
    def remote_name(self) -> Optional[str]:
        return self.remote_operation_name

    @property
    def has_result(self) -> bool:
        return bool(self.result_video)

    @classmethod
    def from_request(cls, request: VideoQueueRequest, **fields) -> "VideoQueueRecord":
        return cls(**request.model_dump(exclude_none=True), **fields)


QueueRecord = Union[ImageQueueRecord, VideoQueueRecord]
QueueRequest = Union[ImageQueueRequest, VideoQueueRequest]


# --- Remote job client payloads ---


class RemoteModel(BaseModel):
    """Wire shape exchanged with the proxy (camelCase on the wire)."""

    class Config:
        """Pydantic configuration."""

        alias_generator = to_camel
        populate_by_name = True

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class SafetySetting(RemoteModel):
    category: str
    threshold: str


class GenerateRequest(RemoteModel):
    """Generate payload (batch job or immediate call) sent to the remote side."""

    prompt: str
    reference_images: Optional[List[str]] = None
    temperature: Optional[float] = None
    seed: Optional[int] = None
    variant_count: Optional[int] = None
    model: Optional[str] = None
    safety_settings: Optional[List[SafetySetting]] = None
    aspect_ratio: Optional[str] = None
    resolution_tier: Optional[str] = None


class EditRequest(RemoteModel):
    """Edit payload (batch job or immediate call) sent to the remote side."""

    instruction: str
    original_image: str
    reference_images: Optional[List[str]] = None
    mask_image: Optional[str] = None
    temperature: Optional[float] = None
    seed: Optional[int] = None
    variant_count: Optional[int] = None
    model: Optional[str] = None
    safety_settings: Optional[List[SafetySetting]] = None
    aspect_ratio: Optional[str] = None
    resolution_tier: Optional[str] = None


class VideoGenerateRequest(RemoteModel):
    """Video operation payload sent to the remote side."""

    prompt: str
    negative_prompt: Optional[str] = None
    model: Optional[str] = None
    aspect_ratio: Optional[str] = None
    resolution: Optional[str] = None
    duration_seconds: Optional[int] = None
    image: Optional[str] = Field(default=None, description="Base64 first frame")
    last_frame: Optional[str] = Field(default=None, description="Base64 last frame")
    reference_images: Optional[List[str]] = None
    video: Optional[str] = Field(default=None, description="Base64 source video (extension)")
    seed: Optional[int] = None


class BatchSubmission(RemoteModel):
    batch_name: str = Field(..., min_length=1)


class BatchStatus(RemoteModel):
    state: str
    dest_file_name: Optional[str] = None


def _require_base64(value: str) -> str:
    """Reject result payloads that would not decode when shown on the canvas."""
    decode_payload(value)
    return value


class BatchResults(RemoteModel):
    """Images returned by a finished batch job or an immediate generate/edit call."""

    images: List[str] = Field(default_factory=list)

    @field_validator("images")
    @classmethod
    def check_images(cls, v: List[str]) -> List[str]:
        return [_require_base64(image) for image in v]


class VideoSubmission(RemoteModel):
    operation_name: str = Field(..., min_length=1)
    model: Optional[str] = None


class OperationStatus(RemoteModel):
    done: bool = False
    state: Literal["PENDING", "RUNNING", "SUCCEEDED", "FAILED"]
    error: Optional[str] = None
    progress: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class VideoResult(RemoteModel):
    video: str = Field(..., min_length=1)
    mime_type: str = "video/mp4"
    duration_seconds: float = 0
    width: int = 0
    height: int = 0

    @field_validator("video")
    @classmethod
    def check_video(cls, v: str) -> str:
        return _require_base64(v)


class SegmentRequest(RemoteModel):
    """Immediate segmentation of one image (or of a mask) by text query."""

    query: str = Field(..., min_length=1)
    image: Optional[str] = None
    mask_image: Optional[str] = None
    temperature: Optional[float] = None
    seed: Optional[int] = None
    model: Optional[str] = None
    safety_settings: Optional[List[SafetySetting]] = None
    aspect_ratio: Optional[str] = None
    resolution_tier: Optional[str] = None


class SegmentResult(RemoteModel):
    """Model answer to a segmentation query.

    ``masks`` holds the parsed JSON answer; ``raw`` carries the text when the
    model did not answer with JSON.
    """

    masks: List[Any] = Field(default_factory=list)
    raw: Optional[str] = None
