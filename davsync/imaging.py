"""
Local thumbnail rendering.
Bounded-memory image transcode with Pillow and single-frame video extraction with ffmpeg.
"""

import asyncio
import io
import logging
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

JPEG_QUALITY = 85


class UnsupportedMediaError(Exception):
    """The file's codec or container cannot be rendered locally."""


def compute_sample_size(width: int, height: int, target_edge: int) -> int:
    """Largest power-of-two divisor that keeps both sides at or above target_edge."""
    sample = 1
    if width <= 0 or height <= 0 or target_edge <= 0:
        return sample
    half_width, half_height = width // 2, height // 2
    while half_width // sample >= target_edge and half_height // sample >= target_edge:
        sample *= 2
    return sample


def transcode_image(source: Path, target_edge: int) -> bytes:
    """
    Decode an image at reduced resolution and re-encode it as a JPEG thumbnail.

    Raises:
        UnsupportedMediaError: Pillow cannot identify or safely decode the file
        OSError: The file cannot be read
    """
    try:
        with Image.open(source) as img:
            sample = compute_sample_size(img.width, img.height, target_edge)
            if img.format == "JPEG" and sample > 1:
                # Let libjpeg decode at 1/2, 1/4 or 1/8 scale
                img.draft("RGB", (img.width // sample, img.height // sample))
            img.load()

            frame = img
            remaining = compute_sample_size(frame.width, frame.height, target_edge)
            if remaining > 1:
                frame = frame.reduce(remaining)
            frame = ImageOps.exif_transpose(frame)
            if frame.mode != "RGB":
                frame = frame.convert("RGB")
            frame.thumbnail((target_edge, target_edge), Image.Resampling.LANCZOS)

            buffer = io.BytesIO()
            frame.save(buffer, format="JPEG", quality=JPEG_QUALITY, optimize=True)
            return buffer.getvalue()
    except (UnidentifiedImageError, Image.DecompressionBombError) as e:
        raise UnsupportedMediaError(str(e)) from e


async def extract_video_frame(
    source: Path,
    destination: Path,
    target_edge: int,
    ffmpeg_binary: str = "ffmpeg",
) -> bytes:
    """
    Extract the first frame of a video as a JPEG scaled to fit target_edge.

    Raises:
        UnsupportedMediaError: ffmpeg is missing or cannot decode the video
        OSError: Local file handling failed
    """
    cmd = [
        ffmpeg_binary,
        "-v", "error",
        "-i", str(source),
        "-vframes", "1",
        "-vf", f"scale={target_edge}:{target_edge}:force_original_aspect_ratio=decrease",
        "-y",
        str(destination),
    ]
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise UnsupportedMediaError(f"{ffmpeg_binary} not available") from e

    _, stderr = await process.communicate()
    if process.returncode != 0 or not destination.exists() or destination.stat().st_size == 0:
        detail = stderr.decode("utf-8", errors="replace").strip()[:200] if stderr else ""
        logger.debug(f"ffmpeg could not extract a frame from {source}: {detail}")
        raise UnsupportedMediaError(f"ffmpeg exited with {process.returncode}")

    return destination.read_bytes()
