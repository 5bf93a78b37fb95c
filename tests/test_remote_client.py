import json

import httpx
import pytest

from nano_studio.exceptions import RemoteJobError, RemoteResultError
from nano_studio.queue.models import (
    EditRequest,
    GenerateRequest,
    SafetySetting,
    SegmentRequest,
    VideoGenerateRequest,
)
from nano_studio.remote import HttpRemoteJobClient


def make_client(handler):
    transport = httpx.MockTransport(handler)
    http = httpx.AsyncClient(transport=transport, base_url="http://proxy")
    return HttpRemoteJobClient(base_url="http://proxy", client=http), http


class TestHttpRemoteJobClient:
    async def test_generate_sends_camel_case_body(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"batchName": "batches/job-1"})

        client, http = make_client(handler)
        request = GenerateRequest(
            prompt="a fox",
            reference_images=["AAAA"],
            variant_count=2,
            safety_settings=[SafetySetting(category="HARM_CATEGORY_HARASSMENT", threshold="BLOCK_NONE")],
        )
        submission = await client.submit_batch_generate(request)
        await http.aclose()

        assert submission.batch_name == "batches/job-1"
        assert seen["path"] == "/api/batch/generate"
        assert seen["body"]["referenceImages"] == ["AAAA"]
        assert seen["body"]["variantCount"] == 2
        assert seen["body"]["safetySettings"][0]["threshold"] == "BLOCK_NONE"
        # unset optionals are not sent
        assert "seed" not in seen["body"]

    async def test_batch_status_quotes_name(self):
        seen = {}

        def handler(request):
            seen["raw_path"] = request.url.raw_path.decode()
            return httpx.Response(200, json={"state": "JOB_STATE_RUNNING"})

        client, http = make_client(handler)
        status = await client.get_batch_status("batches/job-1")
        await http.aclose()

        assert status.state == "JOB_STATE_RUNNING"
        assert seen["raw_path"] == "/api/batch/batches%2Fjob-1"

    async def test_batch_results(self):
        def handler(request):
            assert request.url.raw_path.decode().endswith("/results")
            return httpx.Response(200, json={"images": ["AAAA", "BBBB"]})

        client, http = make_client(handler)
        results = await client.get_batch_results("batches/job-1")
        await http.aclose()

        assert results.images == ["AAAA", "BBBB"]

    async def test_video_generate_and_operation_params(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.path == "/api/video/generate":
                return httpx.Response(200, json={"operationName": "models/veo/operations/op-1", "model": "veo"})
            if request.url.path == "/api/video/operation/status":
                return httpx.Response(200, json={"done": False, "state": "RUNNING", "progress": 0.4})
            return httpx.Response(
                200, json={"video": "VVVV", "mimeType": "video/webm", "durationSeconds": 8, "width": 1280, "height": 720}
            )

        client, http = make_client(handler)
        submission = await client.start_video_generation(VideoGenerateRequest(prompt="waves", last_frame="BBBB"))
        status = await client.get_operation_status(submission.operation_name)
        result = await client.get_operation_result(submission.operation_name)
        await http.aclose()

        assert json.loads(seen[0].content) == {"prompt": "waves", "lastFrame": "BBBB"}
        assert seen[1].url.params["name"] == "models/veo/operations/op-1"
        assert status.state == "RUNNING"
        assert status.progress == pytest.approx(0.4)
        assert result.video == "VVVV"
        assert result.mime_type == "video/webm"
        assert result.width == 1280

    async def test_error_status_maps_to_remote_job_error(self):
        def handler(request):
            return httpx.Response(500, json={"error": "boom"})

        client, http = make_client(handler)
        with pytest.raises(RemoteJobError) as exc_info:
            await client.get_batch_status("batches/job-1")
        await http.aclose()

        assert str(exc_info.value) == "boom"
        assert exc_info.value.status_code == 500

    async def test_error_without_body(self):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        client, http = make_client(handler)
        with pytest.raises(RemoteJobError, match="HTTP 502"):
            await client.get_operation_status("op")
        await http.aclose()

    async def test_malformed_body_maps_to_result_error(self):
        def handler(request):
            return httpx.Response(200, json={"unexpected": True})

        client, http = make_client(handler)
        with pytest.raises(RemoteResultError):
            await client.get_operation_result("op")
        await http.aclose()

    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, http = make_client(handler)
        with pytest.raises(RemoteJobError, match="connection refused"):
            await client.get_batch_results("batches/job-1")
        await http.aclose()

    async def test_undecodable_images_map_to_result_error(self):
        def handler(request):
            return httpx.Response(200, json={"images": ["not base64!!"]})

        client, http = make_client(handler)
        with pytest.raises(RemoteResultError):
            await client.get_batch_results("batches/job-1")
        await http.aclose()


class TestImmediateCalls:
    async def test_generate_and_edit_paths(self):
        seen = []

        def handler(request):
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"images": ["AAAA"]})

        client, http = make_client(handler)
        generated = await client.generate_image(GenerateRequest(prompt="a fox", variant_count=2))
        edited = await client.edit_image(EditRequest(instruction="blue", original_image="BBBB"))
        await http.aclose()

        assert generated.images == ["AAAA"]
        assert edited.images == ["AAAA"]
        assert seen[0] == ("/api/generate", {"prompt": "a fox", "variantCount": 2})
        assert seen[1] == ("/api/edit", {"instruction": "blue", "originalImage": "BBBB"})

    async def test_segment_parses_masks_or_raw(self):
        answers = iter([{"masks": [{"label": "cat"}]}, {"raw": "no json here"}])

        def handler(request):
            assert request.url.path == "/api/segment"
            return httpx.Response(200, json=next(answers))

        client, http = make_client(handler)
        parsed = await client.segment_image(SegmentRequest(query="cat", image="AAAA"))
        raw = await client.segment_image(SegmentRequest(query="cat", mask_image="AAAA"))
        await http.aclose()

        assert parsed.masks == [{"label": "cat"}]
        assert parsed.raw is None
        assert raw.masks == []
        assert raw.raw == "no json here"

    async def test_segment_bad_request(self):
        def handler(request):
            return httpx.Response(400, json={"error": "Provide either image or maskImage, but not both"})

        client, http = make_client(handler)
        with pytest.raises(RemoteJobError) as exc_info:
            await client.segment_image(SegmentRequest(query="cat"))
        await http.aclose()

        assert exc_info.value.status_code == 400
