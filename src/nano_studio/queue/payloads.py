"""Derive remote job payloads from queue records.

Derivation is deterministic: the same record always yields the same payload,
so a record left ``pending`` can be re-submitted later from what is stored.
"""

import base64
import io
import logging
from typing import List, Optional

from PIL import Image

from .hashing import decode_payload, split_data_url
from .models import (
    MAX_VIDEO_REFERENCE_IMAGES,
    EditRequest,
    GenerateRequest,
    ImageQueueRecord,
    SafetySetting,
    VideoGenerateRequest,
    VideoQueueRecord,
)

logger = logging.getLogger(__name__)

MASK_TINT = (0xA8, 0x55, 0xF7)  # #A855F7
MASK_OPACITY = 0.4


def strip_data_url(payload: Optional[str]) -> Optional[str]:
    """Return the bare base64 body of ``payload`` (None passes through)."""
    if payload is None:
        return None
    return split_data_url(payload)[1]


def _strip_all(payloads: Optional[List[str]]) -> List[str]:
    return [strip_data_url(p) for p in (payloads or []) if p]


def render_mask_overlay(original_image: str, mask_image: str) -> str:
    """Tint the masked region of the original so the model can see it.

    Args:
        original_image: Base64 image being edited
        mask_image: Base64 mask, white where the edit applies

    Returns:
        Base64 PNG of the original with the mask region tinted #A855F7 at 40%

    Implementation notes:
        - The mask is resized to the original's dimensions if they differ
        - Mask luminance scales the tint, so soft brush edges stay soft
    """
    with Image.open(io.BytesIO(decode_payload(original_image))) as src:
        base = src.convert("RGBA")
    with Image.open(io.BytesIO(decode_payload(mask_image))) as raw_mask:
        mask = raw_mask.convert("L")

    if mask.size != base.size:
        mask = mask.resize(base.size)

    alpha = mask.point(lambda v: int(v * MASK_OPACITY))
    tint = Image.new("RGBA", base.size, MASK_TINT + (255,))
    base.paste(tint, (0, 0), alpha)

    buffer = io.BytesIO()
    base.convert("RGB").save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def build_generate_request(
    record: ImageQueueRecord,
    default_model: Optional[str] = None,
    safety_settings: Optional[List[SafetySetting]] = None,
) -> GenerateRequest:
    references = _strip_all(record.reference_images)
    return GenerateRequest(
        prompt=record.prompt,
        reference_images=references or None,
        temperature=record.temperature,
        seed=record.seed,
        variant_count=record.variant_count,
        model=record.model or default_model,
        safety_settings=safety_settings,
        aspect_ratio=record.aspect_ratio,
        resolution_tier=record.resolution_tier,
    )


def build_edit_request(
    record: ImageQueueRecord,
    default_model: Optional[str] = None,
    safety_settings: Optional[List[SafetySetting]] = None,
) -> EditRequest:
    """Build the batch edit payload.

    When the record carries a mask, a rendered mask overlay is placed ahead
    of the user's reference images.
    """
    references = _strip_all(record.reference_images)
    mask = strip_data_url(record.mask_image) or None

    if mask:
        overlay = render_mask_overlay(record.original_image, mask)
        references = [overlay] + references

    return EditRequest(
        instruction=record.prompt,
        original_image=strip_data_url(record.original_image),
        reference_images=references or None,
        mask_image=mask,
        temperature=record.temperature,
        seed=record.seed,
        variant_count=record.variant_count,
        model=record.model or default_model,
        safety_settings=safety_settings,
        aspect_ratio=record.aspect_ratio,
        resolution_tier=record.resolution_tier,
    )


def build_image_request(record: ImageQueueRecord, **kwargs):
    if record.kind == "edit":
        return build_edit_request(record, **kwargs)
    return build_generate_request(record, **kwargs)


def build_video_request(record: VideoQueueRecord, default_model: Optional[str] = None) -> VideoGenerateRequest:
    """Build the video operation payload.

    Extension records send only the source video; frame guidance is never
    combined with it.
    """
    references = _strip_all(record.reference_images)
    if len(references) > MAX_VIDEO_REFERENCE_IMAGES:
        logger.warning(
            f"Video record {record.id} has {len(references)} reference images, "
            f"sending the first {MAX_VIDEO_REFERENCE_IMAGES}"
        )
        references = references[:MAX_VIDEO_REFERENCE_IMAGES]

    extending = record.kind == "video-extend"
    return VideoGenerateRequest(
        prompt=record.prompt,
        negative_prompt=record.negative_prompt,
        model=record.model or default_model,
        aspect_ratio=record.aspect_ratio,
        resolution=record.resolution,
        duration_seconds=record.duration_seconds,
        image=None if extending else strip_data_url(record.start_frame_image),
        last_frame=None if extending else strip_data_url(record.last_frame_image),
        reference_images=references or None,
        video=strip_data_url(record.source_video),
        seed=record.seed,
    )
