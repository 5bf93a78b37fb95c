"""In-memory canvas the queue loads finished results into.

The canvas shows either an image set or a single video, never both. Every
load resets the viewport (zoom 1.0, pan at the origin).
"""

import logging
import mimetypes
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from .backends import CanvasSurface
from .hashing import compute_content_hash, decode_payload, split_data_url, to_data_url

logger = logging.getLogger(__name__)

DEFAULT_ZOOM = 1.0
DEFAULT_PAN = (0.0, 0.0)


class CanvasAsset(BaseModel):
    """A single piece of media displayed on the canvas."""

    data_url: str = Field(..., description="data:<mime>;base64,<payload>")
    mime_type: str
    checksum: str = Field(..., description="SHA-256 of the decoded bytes")

    @classmethod
    def from_payload(cls, payload: str, mime_type: str) -> "CanvasAsset":
        mime, _ = split_data_url(payload, default_mime=mime_type)
        return cls(
            data_url=to_data_url(payload, mime),
            mime_type=mime,
            checksum=compute_content_hash(payload),
        )

    def to_bytes(self) -> bytes:
        return decode_payload(self.data_url)


class CanvasState(CanvasSurface):
    """Concrete viewer state used by the CLI and tests."""

    def __init__(self):
        self.images: List[CanvasAsset] = []
        self.image_index = 0
        self.video: Optional[CanvasAsset] = None
        self.zoom = DEFAULT_ZOOM
        self.pan: Tuple[float, float] = DEFAULT_PAN

    def _reset_view(self) -> None:
        self.zoom = DEFAULT_ZOOM
        self.pan = DEFAULT_PAN

    def load_images(self, images: List[str]) -> None:
        self.video = None
        self.images = [CanvasAsset.from_payload(img, "image/png") for img in images]
        self.image_index = 0
        self._reset_view()
        logger.debug(f"Canvas loaded {len(self.images)} image(s)")

    def load_video(self, video: str, mime_type: str = "video/mp4") -> None:
        self.images = []
        self.image_index = 0
        self.video = CanvasAsset.from_payload(video, mime_type)
        self._reset_view()
        logger.debug(f"Canvas loaded video ({self.video.mime_type})")

    @property
    def is_empty(self) -> bool:
        return not self.images and self.video is None

    def export(self, directory) -> List[Path]:
        """Write the displayed media to ``directory``.

        Images become ``image-1.png``, ``image-2.png``, ...; a video becomes
        ``video.<ext>`` with the extension guessed from its MIME type.

        Returns:
            Paths of the files written, in display order
        """
        out_dir = Path(directory)
        out_dir.mkdir(parents=True, exist_ok=True)

        written = []
        for i, asset in enumerate(self.images, start=1):
            ext = mimetypes.guess_extension(asset.mime_type) or ".png"
            path = out_dir / f"image-{i}{ext}"
            path.write_bytes(asset.to_bytes())
            written.append(path)

        if self.video is not None:
            ext = mimetypes.guess_extension(self.video.mime_type) or ".mp4"
            path = out_dir / f"video{ext}"
            path.write_bytes(self.video.to_bytes())
            written.append(path)

        return written
