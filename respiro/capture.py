"""
Screen Capture
==============

Grabs the screen as one JPEG frame for the vision classifier.

All monitors are stitched side by side, the result is downscaled so the
longest edge is at most ``max_edge`` pixels, and encoded as JPEG. mss is tried
first; Pillow's ImageGrab is the fallback.

Capture runs in a worker thread so it never blocks the event loop. Any failure
is raised as CaptureFailure; the engine treats that as a skipped cycle.
"""

import asyncio
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

import mss
from PIL import Image, ImageGrab

from respiro.errors import CaptureFailure

logger = logging.getLogger(__name__)

DEFAULT_MAX_EDGE = 1568
DEFAULT_JPEG_QUALITY = 85


@dataclass(frozen=True)
class CapturedFrame:
    """An encoded screenshot."""
    jpeg: bytes
    width: int
    height: int
    captured_at: datetime = field(default_factory=datetime.now)
    media_type: str = "image/jpeg"


class FrameSource(Protocol):
    """Screen-capture provider."""

    async def capture_frame(self) -> CapturedFrame:
        ...


def stitch_side_by_side(images: list[Image.Image]) -> Image.Image:
    """Combine monitor images horizontally, top-aligned."""
    if not images:
        raise CaptureFailure("No monitor images to combine")
    if len(images) == 1:
        return images[0]
    width = sum(img.width for img in images)
    height = max(img.height for img in images)
    canvas = Image.new("RGB", (width, height))
    x = 0
    for img in images:
        canvas.paste(img, (x, 0))
        x += img.width
    return canvas


def encode_frame(
    image: Image.Image,
    max_edge: int = DEFAULT_MAX_EDGE,
    quality: int = DEFAULT_JPEG_QUALITY,
) -> CapturedFrame:
    """Downscale ``image`` to fit ``max_edge`` and encode it as JPEG."""
    if image.mode != "RGB":
        image = image.convert("RGB")
    longest = max(image.width, image.height)
    if longest > max_edge:
        scale = max_edge / longest
        size = (max(1, round(image.width * scale)), max(1, round(image.height * scale)))
        image = image.resize(size, Image.LANCZOS)

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality, optimize=True)
    return CapturedFrame(jpeg=buffer.getvalue(), width=image.width, height=image.height)


def _grab_mss() -> Optional[Image.Image]:
    """Capture every monitor with mss."""
    try:
        with mss.mss() as sct:
            # monitors[0] is the union of all screens; the rest are individual
            monitors = sct.monitors[1:] or sct.monitors[:1]
            images = []
            for monitor in monitors:
                shot = sct.grab(monitor)
                images.append(Image.frombytes("RGB", shot.size, shot.rgb))
        return stitch_side_by_side(images)
    except Exception as e:
        logger.debug("mss capture failed: %s", e)
        return None


def _grab_pil() -> Optional[Image.Image]:
    """Capture with Pillow's ImageGrab (all screens where supported)."""
    try:
        return ImageGrab.grab(all_screens=True)
    except Exception as e:
        logger.debug("PIL capture failed: %s", e)
        return None


class ScreenCapture:
    """Default screen-capture provider."""

    def __init__(self, max_edge: int = DEFAULT_MAX_EDGE, quality: int = DEFAULT_JPEG_QUALITY):
        self.max_edge = max_edge
        self.quality = quality

    def grab(self) -> CapturedFrame:
        """Blocking capture. Raises CaptureFailure."""
        image = _grab_mss() or _grab_pil()
        if image is None:
            raise CaptureFailure("No screenshot method available (tried mss and PIL)")
        try:
            return encode_frame(image, self.max_edge, self.quality)
        except (OSError, ValueError) as e:
            raise CaptureFailure(f"Could not encode screenshot: {e}") from e

    async def capture_frame(self) -> CapturedFrame:
        return await asyncio.to_thread(self.grab)
