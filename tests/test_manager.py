"""Tests for QueueManager submission and reconciliation.

Tests cover:
- Persist-before-network and submission failure handling
- Image batch and video operation polling transitions
- On-demand select (fresh read, canvas load, single poll)
- Bulk refresh tolerance of individual failures
- Monotonic transitions and delete races
"""

import base64
import logging
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from nano_studio.exceptions import RemoteJobError, RemoteResultError
from nano_studio.queue.models import (
    ImageQueueRecord,
    ImageQueueRequest,
    OperationStatus,
    VideoQueueRecord,
    VideoQueueRequest,
    VideoResult,
)


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


async def submit_image(manager, **fields):
    record_id = await manager.create_and_submit(ImageQueueRequest(prompt=fields.pop("prompt", "a cat"), **fields))
    await manager.drain()
    return await manager.get(record_id)


async def submit_video(manager, **fields):
    record_id = await manager.create_and_submit(VideoQueueRequest(prompt=fields.pop("prompt", "a wave"), **fields))
    await manager.drain()
    return await manager.get(record_id)


class TestSubmission:
    async def test_record_persisted_before_network_call(self, manager, fake_client):
        seen = []

        async def check_store(request):
            records = await manager.list_all()
            seen.append([(r.prompt, r.status) for r in records])

        fake_client.on_submit = check_store
        await submit_image(manager, prompt="persist me")

        assert seen == [[("persist me", "pending")]]

    async def test_create_and_submit_returns_before_submission(self, manager, fake_client):
        record_id = await manager.create_and_submit(ImageQueueRequest(prompt="x"))
        assert (await manager.get(record_id)).status == "pending"

        await manager.drain()
        record = await manager.get(record_id)
        assert record.status == "submitted"
        assert record.remote_job_name == "batches/job-1"
        assert record.submitted_at is not None

    async def test_invalid_request_persists_nothing(self, manager):
        with pytest.raises(ValidationError):
            await manager.create_and_submit(ImageQueueRequest(kind="edit", prompt="x"))
        assert await manager.list_all() == []

    async def test_submission_failure_marks_failed(self, manager, fake_client):
        fake_client.submit_error = RemoteJobError("quota exceeded", status_code=500)
        record = await submit_image(manager)

        assert record.status == "failed"
        assert record.error == "quota exceeded"
        assert record.completed_at is not None
        assert record.remote_job_name is None
        assert record.result_images is None

    async def test_submission_failure_without_message_uses_class_name(self, manager, fake_client):
        fake_client.submit_error = TimeoutError()
        record = await submit_image(manager)
        assert record.error == "TimeoutError"

    async def test_edit_routes_to_edit_endpoint(self, manager, fake_client, red_png):
        await submit_image(manager, kind="edit", original_image=red_png)
        kind, payload = fake_client.network_calls()[0]
        assert kind == "edit"
        assert payload.original_image == red_png
        assert payload.model == "img-model"

    async def test_video_submission(self, manager, fake_client):
        record = await submit_video(manager)
        assert record.status == "submitted"
        assert record.remote_operation_name == "models/veo/operations/op-1"
        assert fake_client.network_calls("video")[0][1].model == "veo-model"

    async def test_retry_resubmits_pending_only(self, manager, fake_client):
        stuck = await manager.create(ImageQueueRequest(prompt="stuck"))
        done = await submit_image(manager, prompt="done")

        retried = await manager.retry()
        assert [r.id for r in retried] == [stuck.id]
        assert retried[0].status == "submitted"
        assert (await manager.get(done.id)).remote_job_name == "batches/job-1"
        assert len(fake_client.network_calls("generate")) == 2

    async def test_retry_single_record(self, manager):
        stuck = await manager.create(ImageQueueRequest(prompt="stuck"))
        other = await manager.create(ImageQueueRequest(prompt="other"))

        retried = await manager.retry(stuck.id)
        assert [r.id for r in retried] == [stuck.id]
        assert (await manager.get(other.id)).status == "pending"

    async def test_retry_skips_submission_in_flight(self, manager, fake_client):
        record_id = await manager.create_and_submit(ImageQueueRequest(prompt="racing"))

        retried = await manager.retry()
        await manager.drain()

        assert retried == []
        assert len(fake_client.network_calls("generate")) == 1
        assert (await manager.get(record_id)).remote_job_name == "batches/job-1"

    async def test_second_submission_keeps_first_remote_name(self, manager, fake_client):
        pending = await manager.create(ImageQueueRequest(prompt="twice"))
        await manager.submit(pending)

        assert await manager.submit(pending) is None
        assert (await manager.get(pending.id)).remote_job_name == "batches/job-1"


class TestImagePolling:
    async def test_batch_happy_path_with_two_variants(self, manager, fake_client, canvas):
        record = await submit_image(manager, variant_count=2)
        assert fake_client.network_calls("generate")[0][1].variant_count == 2

        name = record.remote_job_name
        images = [b64(b"variant-1"), b64(b"variant-2")]
        fake_client.batch_states[name] = "JOB_STATE_SUCCEEDED"
        fake_client.batch_images[name] = images

        selected = await manager.select(record.id)

        assert selected.status == "succeeded"
        assert selected.result_images == images
        assert selected.error is None
        assert selected.completed_at is not None
        assert len(canvas.images) == 2
        assert canvas.video is None
        assert canvas.zoom == 1.0
        assert canvas.pan == (0.0, 0.0)

    async def test_running_batch_is_unchanged(self, manager, fake_client):
        record = await submit_image(manager)
        fake_client.batch_states[record.remote_job_name] = "JOB_STATE_RUNNING"

        selected = await manager.select(record.id)
        assert selected == record

    async def test_cancelled_batch_fails_with_cancelled(self, manager, fake_client):
        record = await submit_image(manager)
        fake_client.batch_states[record.remote_job_name] = "JOB_STATE_CANCELLED"

        selected = await manager.select(record.id)
        assert selected.status == "failed"
        assert selected.error == "cancelled"
        assert selected.result_images is None

    async def test_failed_batch(self, manager, fake_client):
        record = await submit_image(manager)
        fake_client.batch_states[record.remote_job_name] = "JOB_STATE_FAILED"
        assert (await manager.select(record.id)).error == "failed"

    async def test_succeeded_batch_without_images_fails(self, manager, fake_client):
        record = await submit_image(manager)
        fake_client.batch_states[record.remote_job_name] = "JOB_STATE_SUCCEEDED"

        selected = await manager.select(record.id)
        assert selected.status == "failed"
        assert selected.error == "no images returned"

    async def test_transient_poll_error_leaves_record_unchanged(self, manager, fake_client, caplog):
        record = await submit_image(manager)
        fake_client.batch_states[record.remote_job_name] = RemoteJobError("proxy down")

        with caplog.at_level(logging.WARNING):
            selected = await manager.select(record.id)

        assert selected == record
        assert (await manager.get(record.id)).status == "submitted"
        assert "proxy down" in caplog.text

    async def test_malformed_result_is_transient(self, manager, fake_client):
        record = await submit_image(manager)
        fake_client.batch_states[record.remote_job_name] = RemoteResultError("bad body")
        assert (await manager.select(record.id)).status == "submitted"


class TestVideoPolling:
    async def test_running_operation_moves_to_processing(self, manager, fake_client):
        record = await submit_video(manager)
        name = record.remote_operation_name
        fake_client.operation_states[name] = OperationStatus(state="RUNNING", progress=0.4)

        selected = await manager.select(record.id)
        assert selected.status == "processing"
        assert selected.progress_percent == 0.4

        fake_client.operation_states[name] = OperationStatus(state="RUNNING", progress=0.7)
        assert (await manager.select(record.id)).progress_percent == 0.7

    async def test_succeeded_operation_loads_video(self, manager, fake_client, canvas):
        record = await submit_video(manager)
        name = record.remote_operation_name
        canvas.load_images([b64(b"old image")])
        fake_client.operation_states[name] = OperationStatus(done=True, state="SUCCEEDED")
        fake_client.operation_results[name] = VideoResult(video=b64(b"mp4 bytes"), mime_type="video/mp4")

        selected = await manager.select(record.id)

        assert selected.status == "succeeded"
        assert selected.result_video == b64(b"mp4 bytes")
        assert selected.result_mime_type == "video/mp4"
        assert canvas.images == []
        assert canvas.video is not None

    async def test_failed_operation_uses_remote_error(self, manager, fake_client):
        record = await submit_video(manager)
        fake_client.operation_states[record.remote_operation_name] = OperationStatus(
            done=True, state="FAILED", error="safety filter"
        )
        assert (await manager.select(record.id)).error == "safety filter"

    async def test_failed_operation_default_error(self, manager, fake_client):
        record = await submit_video(manager)
        fake_client.operation_states[record.remote_operation_name] = OperationStatus(done=True, state="FAILED")
        assert (await manager.select(record.id)).error == "Video generation failed"

    async def test_extension_request_normalized_before_submission(self, manager, fake_client, red_png):
        record = await submit_video(manager, source_video=b64(b"source mp4"), start_frame_image=red_png)

        assert record.kind == "video-extend"
        assert record.start_frame_image is None
        payload = fake_client.network_calls("video")[0][1]
        assert payload.video == b64(b"source mp4")
        assert payload.image is None
        assert payload.last_frame is None


class TestSelect:
    async def test_missing_record(self, manager):
        assert await manager.select("ghost") is None

    async def test_succeeded_record_loads_without_network(self, manager, fake_client, canvas):
        record = await submit_image(manager)
        fake_client.batch_states[record.remote_job_name] = "JOB_STATE_SUCCEEDED"
        fake_client.batch_images[record.remote_job_name] = [b64(b"one")]
        await manager.select(record.id)
        calls_before = len(fake_client.calls)

        canvas.load_video(b64(b"something else"))
        selected = await manager.select(record.id)

        assert selected.status == "succeeded"
        assert len(fake_client.calls) == calls_before
        assert len(canvas.images) == 1
        assert canvas.video is None

    async def test_pending_record_is_not_polled(self, manager, fake_client):
        record = await manager.create(ImageQueueRequest(prompt="x"))
        assert (await manager.select(record.id)).status == "pending"
        assert fake_client.calls == []

    async def test_failed_record_is_not_polled(self, manager, fake_client):
        fake_client.submit_error = RemoteJobError("nope")
        record = await submit_image(manager)
        calls_before = len(fake_client.calls)
        assert (await manager.select(record.id)).status == "failed"
        assert len(fake_client.calls) == calls_before

    async def test_select_polls_exactly_once(self, manager, fake_client):
        record = await submit_image(manager)
        await manager.select(record.id)
        assert len(fake_client.network_calls("batch_status")) == 1

    async def test_malformed_batch_results_leave_record_submitted(self, manager, fake_client, canvas):
        record = await submit_image(manager)
        name = record.remote_job_name
        fake_client.batch_states[name] = "JOB_STATE_SUCCEEDED"
        fake_client.batch_images[name] = ["not base64!!"]

        selected = await manager.select(record.id)

        assert selected.status == "submitted"
        assert (await manager.get(record.id)).status == "submitted"
        assert canvas.is_empty

        fake_client.batch_images[name] = [b64(b"fixed")]
        assert (await manager.select(record.id)).status == "succeeded"
        assert len(canvas.images) == 1

    async def test_malformed_video_result_leaves_record_unchanged(self, manager, fake_client, canvas):
        record = await submit_video(manager)
        name = record.remote_operation_name
        fake_client.operation_states[name] = OperationStatus(done=True, state="SUCCEEDED")
        fake_client.operation_results[name] = RemoteResultError("Unexpected response")

        selected = await manager.select(record.id)

        assert selected.status == "submitted"
        assert selected.result_video is None
        assert canvas.is_empty

    async def test_undecodable_stored_result_is_not_raised(self, manager, canvas, caplog):
        stored = ImageQueueRecord(
            prompt="legacy", status="succeeded", remote_job_name="batches/old", result_images=["not base64!!"]
        )
        await manager.images.save(stored)

        with caplog.at_level(logging.ERROR):
            selected = await manager.select(stored.id)

        assert selected.status == "succeeded"
        assert canvas.is_empty
        assert "Could not load result" in caplog.text


class TestListingAndRefresh:
    async def test_list_all_merges_newest_first(self, manager):
        now = datetime.now(timezone.utc)
        await manager.images.save(ImageQueueRecord(prompt="img-old", created_at=now - timedelta(minutes=3)))
        await manager.videos.save(VideoQueueRecord(prompt="vid-mid", created_at=now - timedelta(minutes=2)))
        await manager.images.save(ImageQueueRecord(prompt="img-new", created_at=now))

        records = await manager.list_all()
        assert [r.prompt for r in records] == ["img-new", "vid-mid", "img-old"]
        assert manager.records == records

    async def test_refresh_all_tolerates_individual_failures(self, manager, fake_client):
        broken = await submit_image(manager, prompt="broken")
        healthy = await submit_image(manager, prompt="healthy")
        video = await submit_video(manager)
        fake_client.batch_states[broken.remote_job_name] = RemoteJobError("boom")
        fake_client.batch_states[healthy.remote_job_name] = "JOB_STATE_SUCCEEDED"
        fake_client.batch_images[healthy.remote_job_name] = [b64(b"img")]
        fake_client.operation_states[video.remote_operation_name] = OperationStatus(state="RUNNING", progress=0.5)

        await manager.list_all()
        records = {r.id: r for r in await manager.refresh_all()}

        assert records[broken.id].status == "submitted"
        assert records[healthy.id].status == "succeeded"
        assert records[video.id].status == "processing"

    async def test_refresh_all_skips_terminal_and_pending(self, manager, fake_client):
        await manager.create(ImageQueueRequest(prompt="pending"))
        fake_client.submit_error = RemoteJobError("nope")
        await submit_image(manager, prompt="failed")
        calls_before = len(fake_client.calls)

        await manager.list_all()
        await manager.refresh_all()
        assert len(fake_client.calls) == calls_before

    async def test_stale_poll_cannot_regress_terminal_record(self, manager, fake_client):
        record = await submit_image(manager)
        name = record.remote_job_name
        await manager.list_all()  # in-memory copy still says "submitted"

        fake_client.batch_states[name] = "JOB_STATE_SUCCEEDED"
        fake_client.batch_images[name] = [b64(b"img")]
        await manager.select(record.id)

        fake_client.batch_states[name] = "JOB_STATE_FAILED"
        records = await manager.refresh_all()

        assert records[0].status == "succeeded"
        assert records[0].error is None

    async def test_delete_during_poll_does_not_resurrect(self, manager, fake_client):
        record = await submit_image(manager)
        fake_client.batch_states[record.remote_job_name] = "JOB_STATE_FAILED"

        async def delete_first(name):
            await manager.delete(record.id)

        fake_client.on_status = delete_first
        assert await manager.select(record.id) == record
        assert await manager.get(record.id) is None

    async def test_delete_is_idempotent(self, manager):
        record = await manager.create(VideoQueueRequest(prompt="x"))
        await manager.delete(record.id)
        await manager.delete(record.id)
        assert await manager.list_all() == []
