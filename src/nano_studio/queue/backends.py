"""Abstract base classes for the queue's external collaborators.

This module defines the interfaces the Queue Manager depends on: durable
key-value storage, the remote job client (image batch jobs and video
operations) and the viewing surface results are loaded into. Concrete
implementations are injected, so tests can substitute fakes for any of them.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, List, Optional

if TYPE_CHECKING:
    from .models import (
        BatchResults,
        BatchStatus,
        BatchSubmission,
        EditRequest,
        GenerateRequest,
        OperationStatus,
        SegmentRequest,
        SegmentResult,
        VideoGenerateRequest,
        VideoResult,
        VideoSubmission,
    )


class RecordStore(ABC):
    """Async key-value persistence for queue records.

    Implementations must provide:
    - JSON-compatible values (dicts, lists, strings, numbers)
    - get() returning None for missing keys (never raising)
    - Idempotent delete()
    - Independence across keys (set/delete on one key never touches another)
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the value stored under ``key`` or None if absent."""
        pass

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key`` (insert or replace)."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; deleting a missing key is not an error."""
        pass

    @abstractmethod
    async def list_keys(self) -> List[str]:
        """Return every stored key."""
        pass


class RemoteJobClient(ABC):
    """Typed access to the two remote job styles.

    Image work uses batch jobs (submit → poll by job name → fetch results).
    Video work uses long-running operations (start → poll by operation name →
    fetch result). Implementations raise RemoteJobError on failure and
    RemoteResultError when an answer has an unexpected shape.

    The immediate calls at the end sit outside the queue; a client that only
    serves the queue may leave them unimplemented.
    """

    @abstractmethod
    async def submit_batch_generate(self, request: "GenerateRequest") -> "BatchSubmission":
        """Create a batch job with one sub-request per variant."""
        pass

    @abstractmethod
    async def submit_batch_edit(self, request: "EditRequest") -> "BatchSubmission":
        """Create a batch edit job with one sub-request per variant."""
        pass

    @abstractmethod
    async def get_batch_status(self, batch_name: str) -> "BatchStatus":
        """Query batch state (JOB_STATE_*)."""
        pass

    @abstractmethod
    async def get_batch_results(self, batch_name: str) -> "BatchResults":
        """Fetch base64 images of a succeeded batch job."""
        pass

    @abstractmethod
    async def start_video_generation(self, request: "VideoGenerateRequest") -> "VideoSubmission":
        """Start a video operation and return its name."""
        pass

    @abstractmethod
    async def get_operation_status(self, operation_name: str) -> "OperationStatus":
        """Query operation state, error and fractional progress."""
        pass

    @abstractmethod
    async def get_operation_result(self, operation_name: str) -> "VideoResult":
        """Fetch the finished video.

        Implementation notes:
        - Any secondary download (remote answers with a URI instead of
          inline bytes) happens here, never in the Queue Manager
        """
        pass

    async def generate_image(self, request: "GenerateRequest") -> "BatchResults":
        """Generate images in one blocking call, outside the queue."""
        raise NotImplementedError

    async def edit_image(self, request: "EditRequest") -> "BatchResults":
        """Edit an image in one blocking call, outside the queue."""
        raise NotImplementedError

    async def segment_image(self, request: "SegmentRequest") -> "SegmentResult":
        """Ask for segmentation masks of one image by text query."""
        raise NotImplementedError


class CanvasSurface(ABC):
    """Viewing surface results are loaded into.

    Both methods reset zoom/pan to defaults, and loading one media type clears
    the other (image and video display are mutually exclusive).
    """

    @abstractmethod
    def load_images(self, images: List[str]) -> None:
        """Show an image set (base64 PNG payloads)."""
        pass

    @abstractmethod
    def load_video(self, video: str, mime_type: str = "video/mp4") -> None:
        """Show a video (base64 payload)."""
        pass
