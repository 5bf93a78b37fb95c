"""Build Gemini/Veo request structures from proxy payloads.

Everything here is pure: payloads in, plain dicts out. The dicts use the
google-genai SDK's snake_case field names, which the SDK validates into its
own types when the request is sent.
"""

import base64
from typing import Any, Dict, List, Optional

from ..models import DEFAULT_IMAGE_MODEL, DEFAULT_VIDEO_MODEL, VIDEO_MODELS, default_safety_settings
from ..queue.models import (
    MAX_VIDEO_REFERENCE_IMAGES,
    EditRequest,
    GenerateRequest,
    SafetySetting,
    VideoGenerateRequest,
)

MASK_INSTRUCTION = (
    "\n\nIMPORTANT: Apply changes ONLY where the mask image shows white pixels (value 255). "
    "Leave all other areas completely unchanged. Respect the mask boundaries precisely and "
    "maintain seamless blending at the edges."
)


def build_edit_prompt(instruction: str, has_mask: bool) -> str:
    mask_instruction = MASK_INSTRUCTION if has_mask else ""
    return (
        f"Edit this image according to the following instruction: {instruction}\n\n"
        "Maintain the original image's lighting, perspective, and overall composition. "
        f"Make the changes look natural and seamlessly integrated.{mask_instruction}\n\n"
        "Preserve image quality and ensure the edit looks professional and realistic."
    )


def build_image_config(aspect_ratio: Optional[str], resolution_tier: Optional[str]) -> Optional[Dict[str, str]]:
    """``auto`` aspect ratio means "let the model decide" and is not sent."""
    image_config = {}
    if aspect_ratio and aspect_ratio != "auto":
        image_config["aspect_ratio"] = aspect_ratio
    if resolution_tier:
        image_config["image_size"] = resolution_tier
    return image_config or None


def image_part(data: str, mime_type: str = "image/png") -> Dict[str, Any]:
    return {"inline_data": {"mime_type": mime_type, "data": base64.b64decode(data)}}


def reference_parts(reference_images: Optional[List[str]]) -> List[Dict[str, Any]]:
    """Label each reference so prompts can refer to them by name."""
    if not reference_images:
        return []
    count = len(reference_images)
    parts = [{"text": f"[{count} reference image(s) provided as reference-1 through reference-{count}]"}]
    for i, image in enumerate(reference_images, start=1):
        parts.append({"text": f"reference-{i}:"})
        parts.append(image_part(image))
    return parts


def build_generation_config(
    safety_settings: Optional[List[SafetySetting]],
    temperature: Optional[float],
    seed: Optional[int],
    aspect_ratio: Optional[str],
    resolution_tier: Optional[str],
) -> Dict[str, Any]:
    settings = safety_settings if safety_settings is not None else default_safety_settings()
    config: Dict[str, Any] = {
        "safety_settings": [{"category": s.category, "threshold": s.threshold} for s in settings],
    }
    if temperature is not None:
        config["temperature"] = temperature
    if seed is not None:
        config["seed"] = seed
    image_config = build_image_config(aspect_ratio, resolution_tier)
    if image_config:
        config["image_config"] = image_config
    return config


def _inlined_requests(parts: List[Dict[str, Any]], config: Dict[str, Any], variant_count: Optional[int]):
    """One identical sub-request per variant inside a single batch job."""
    count = max(1, variant_count or 1)
    return [{"contents": [{"role": "user", "parts": parts}], "config": config} for _ in range(count)]


def generate_parts(request: GenerateRequest) -> List[Dict[str, Any]]:
    return [{"text": request.prompt}] + reference_parts(request.reference_images)


def edit_parts(request: EditRequest) -> List[Dict[str, Any]]:
    """Edit prompt, original image, labelled references, then the mask last."""
    parts = [
        {"text": build_edit_prompt(request.instruction, bool(request.mask_image))},
        image_part(request.original_image),
    ]
    parts.extend(reference_parts(request.reference_images))
    if request.mask_image:
        parts.append(image_part(request.mask_image))
    return parts


def _request_config(request) -> Dict[str, Any]:
    return build_generation_config(
        request.safety_settings, request.temperature, request.seed, request.aspect_ratio, request.resolution_tier
    )


def build_generate_batch(request: GenerateRequest) -> List[Dict[str, Any]]:
    return _inlined_requests(generate_parts(request), _request_config(request), request.variant_count)


def build_edit_batch(request: EditRequest) -> List[Dict[str, Any]]:
    return _inlined_requests(edit_parts(request), _request_config(request), request.variant_count)


def build_immediate_config(request) -> Dict[str, Any]:
    """Config for a direct generate/edit call; variants become candidates of one response."""
    config = _request_config(request)
    config["candidate_count"] = max(1, request.variant_count or 1)
    return config


def build_segmentation_prompt(query: str) -> str:
    return (
        f"Analyze this image and create a segmentation mask for: {query}\n\n"
        "Return a JSON object with this exact structure:\n"
        "{\n"
        '  "masks": [\n'
        "    {\n"
        '      "label": "description of the segmented object",\n'
        '      "box_2d": [x, y, width, height],\n'
        '      "mask": "base64-encoded binary mask image"\n'
        "    }\n"
        "  ]\n"
        "}\n\n"
        "Only segment the specific object or region requested. The mask should be a binary PNG where "
        "white pixels (255) indicate the selected region and black pixels (0) indicate the background."
    )


def segment_parts(query: str, target_image: str) -> List[Dict[str, Any]]:
    return [{"text": build_segmentation_prompt(query)}, image_part(target_image)]


def resolve_image_model(model: Optional[str]) -> str:
    return model or DEFAULT_IMAGE_MODEL


def resolve_video_model(model: Optional[str]) -> str:
    """Unknown video models fall back to the default."""
    return model if model in VIDEO_MODELS else DEFAULT_VIDEO_MODEL


def build_video_params(request: VideoGenerateRequest) -> Dict[str, Any]:
    """Keyword arguments for ``client.models.generate_videos``.

    Implementation notes:
        - Interpolation (first and last frame) does not accept resolution or
          duration, so both are dropped in that mode
        - The last frame travels inside the config, the first frame and the
          source video are top-level arguments
        - At most three style references are sent
    """
    interpolation = bool(request.image and request.last_frame)

    config: Dict[str, Any] = {}
    if request.negative_prompt:
        config["negative_prompt"] = request.negative_prompt
    if request.aspect_ratio:
        config["aspect_ratio"] = request.aspect_ratio
    if not interpolation:
        if request.resolution:
            config["resolution"] = request.resolution
        if request.duration_seconds:
            config["duration_seconds"] = request.duration_seconds
    if request.seed is not None:
        config["seed"] = request.seed
    if request.last_frame:
        config["last_frame"] = {"image_bytes": base64.b64decode(request.last_frame), "mime_type": "image/png"}
    if request.reference_images:
        config["reference_images"] = [
            {
                "image": {"image_bytes": base64.b64decode(img), "mime_type": "image/png"},
                "reference_type": "STYLE",
            }
            for img in request.reference_images[:MAX_VIDEO_REFERENCE_IMAGES]
        ]

    params: Dict[str, Any] = {
        "model": resolve_video_model(request.model),
        "prompt": request.prompt,
    }
    if config:
        params["config"] = config
    if request.image:
        params["image"] = {"image_bytes": base64.b64decode(request.image), "mime_type": "image/png"}
    if request.video:
        params["video"] = {"video_bytes": base64.b64decode(request.video), "mime_type": "video/mp4"}
    return params


def response_images(response: Any, all_candidates: bool = False) -> List[str]:
    """Base64 images from a GenerateContentResponse.

    Batch sub-responses carry one candidate each; an immediate call asks for
    one candidate per variant, so it reads them all.
    """
    images: List[str] = []
    candidates = getattr(response, "candidates", None) or []
    if not all_candidates:
        candidates = candidates[:1]
    for candidate in candidates:
        if candidate.content is None:
            continue
        for part in candidate.content.parts or []:
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                data = inline.data
                images.append(base64.b64encode(data).decode("ascii") if isinstance(data, bytes) else data)
    return images


def response_text(response: Any) -> Optional[str]:
    """Text of the first part of the first candidate, if any."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates or candidates[0].content is None:
        return None
    parts = candidates[0].content.parts or []
    return getattr(parts[0], "text", None) if parts else None


def extract_batch_images(dest: Any) -> List[str]:
    """Collect base64 images from a finished batch job's destination."""
    images: List[str] = []
    if dest is None:
        return images

    for item in getattr(dest, "inlined_responses", None) or []:
        images.extend(response_images(getattr(item, "response", None)))
    return images


def state_name(state: Any) -> str:
    """SDK job states are enums; compare by their string value."""
    if state is None:
        return "UNKNOWN"
    return str(getattr(state, "value", state))


def normalize_progress(value: Any) -> Optional[float]:
    """Metadata progress may be a percentage; always report a 0..1 fraction."""
    if value is None:
        return None
    try:
        progress = float(value)
    except (TypeError, ValueError):
        return None
    if progress > 1:
        progress = progress / 100
    return min(max(progress, 0.0), 1.0)


def parse_duration(value: Any) -> float:
    """``"8s"`` or ``8`` -> 8.0; anything else -> 0."""
    if value is None:
        return 0.0
    if isinstance(value, str):
        value = value.strip().rstrip("s")
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
