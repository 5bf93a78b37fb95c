import base64
import io
import logging
import tempfile
from pathlib import Path

import pytest
from PIL import Image

from nano_studio.queue import CanvasState, QueueManager, SQLiteRecordStore
from nano_studio.queue.backends import RemoteJobClient
from nano_studio.queue.models import (
    BatchResults,
    BatchStatus,
    BatchSubmission,
    OperationStatus,
    SegmentResult,
    VideoResult,
    VideoSubmission,
)


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def png_b64(size=(4, 4), color=(255, 0, 0)) -> str:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return b64(buffer.getvalue())


class FakeRemoteClient(RemoteJobClient):
    """Scripted RemoteJobClient.

    Batch/operation states and operation results are set per remote name; an
    Exception instance is raised instead of returned.
    Immediate calls answer with ``immediate_images`` and ``segment_result``.
    """

    def __init__(self):
        self.calls = []
        self.submit_error = None
        self.on_submit = None
        self.on_status = None
        self.batch_states = {}
        self.batch_images = {}
        self.operation_states = {}
        self.operation_results = {}
        self.immediate_images = []
        self.segment_result = SegmentResult()
        self._counter = 0

    async def _submit(self, kind, request):
        self.calls.append((kind, request))
        if self.on_submit is not None:
            await self.on_submit(request)
        if self.submit_error is not None:
            raise self.submit_error
        self._counter += 1

    async def submit_batch_generate(self, request):
        await self._submit("generate", request)
        name = f"batches/job-{self._counter}"
        self.batch_states.setdefault(name, "JOB_STATE_PENDING")
        return BatchSubmission(batch_name=name)

    async def submit_batch_edit(self, request):
        await self._submit("edit", request)
        name = f"batches/job-{self._counter}"
        self.batch_states.setdefault(name, "JOB_STATE_PENDING")
        return BatchSubmission(batch_name=name)

    async def get_batch_status(self, batch_name):
        self.calls.append(("batch_status", batch_name))
        if self.on_status is not None:
            await self.on_status(batch_name)
        state = self.batch_states[batch_name]
        if isinstance(state, Exception):
            raise state
        return BatchStatus(state=state)

    async def get_batch_results(self, batch_name):
        self.calls.append(("batch_results", batch_name))
        return BatchResults(images=self.batch_images.get(batch_name, []))

    async def start_video_generation(self, request):
        await self._submit("video", request)
        name = f"models/veo/operations/op-{self._counter}"
        self.operation_states.setdefault(name, OperationStatus(state="PENDING"))
        return VideoSubmission(operation_name=name, model=request.model)

    async def get_operation_status(self, operation_name):
        self.calls.append(("operation_status", operation_name))
        state = self.operation_states[operation_name]
        if isinstance(state, Exception):
            raise state
        return state

    async def get_operation_result(self, operation_name):
        self.calls.append(("operation_result", operation_name))
        result = self.operation_results[operation_name]
        if isinstance(result, Exception):
            raise result
        return result

    async def generate_image(self, request):
        self.calls.append(("immediate_generate", request))
        return BatchResults(images=self.immediate_images)

    async def edit_image(self, request):
        self.calls.append(("immediate_edit", request))
        return BatchResults(images=self.immediate_images)

    async def segment_image(self, request):
        self.calls.append(("segment", request))
        return self.segment_result

    async def aclose(self):
        pass

    def network_calls(self, kind=None):
        return [c for c in self.calls if kind is None or c[0] == kind]


@pytest.fixture
def temp_db():
    """Create temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test_queue.db"
        yield str(db_path)


@pytest.fixture
def backend(temp_db):
    store = SQLiteRecordStore(temp_db)
    yield store
    store.close()


@pytest.fixture
def fake_client():
    return FakeRemoteClient()


@pytest.fixture
def canvas():
    return CanvasState()


@pytest.fixture
def manager(backend, fake_client, canvas):
    return QueueManager(backend, fake_client, canvas=canvas, image_model="img-model", video_model="veo-model")


@pytest.fixture
def red_png():
    return png_b64()


@pytest.fixture
def half_mask_png():
    """4x4 mask, white on the left half."""
    mask = Image.new("L", (4, 4), 0)
    for x in range(2):
        for y in range(4):
            mask.putpixel((x, y), 255)
    buffer = io.BytesIO()
    mask.save(buffer, format="PNG")
    return b64(buffer.getvalue())


@pytest.fixture(autouse=True)
def _reset_logging_handlers():
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_nano_studio", False):
            root.removeHandler(handler)
