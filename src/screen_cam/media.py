"""Still frame and preview clip generation from finalized recordings."""
from __future__ import annotations

import logging
from fractions import Fraction
from pathlib import Path

import av
import numpy as np
import simplejpeg

from .video_encoding import EVEN_DIMENSION_CODECS, select_preview_backend

logger = logging.getLogger(__name__)

PREVIEW_SECONDS = 10.0
PREVIEW_FPS = 5
PREVIEW_MAX_WIDTH = 640
SNAPSHOT_QUALITY = 85


class MediaError(RuntimeError):
    """Raised when a derived asset could not be produced."""


def _video_stream(container: av.container.InputContainer) -> av.video.stream.VideoStream:
    for stream in container.streams:
        if getattr(stream, "type", "") == "video":
            return stream
    raise MediaError("Recording does not contain a video stream")


def _prepare_rgb(array: np.ndarray) -> np.ndarray:
    frame = np.asarray(array)
    if frame.ndim == 2:
        frame = np.repeat(frame[:, :, np.newaxis], 3, axis=2)
    elif frame.ndim == 3 and frame.shape[2] > 3:
        frame = frame[:, :, :3]
    if frame.dtype != np.uint8:
        frame = np.clip(frame, 0, 255).astype(np.uint8)
    return np.ascontiguousarray(frame)


def _even(value: int) -> int:
    return max(2, value - (value % 2))


def preview_dimensions(width: int, height: int, max_width: int, *, even: bool = True) -> tuple[int, int]:
    """Scale ``width``x``height`` down to ``max_width`` keeping the aspect ratio."""

    if width <= 0 or height <= 0:
        raise ValueError("Frame dimensions must be positive")
    scale = min(1.0, max_width / float(width))
    scaled_width = max(1, int(round(width * scale)))
    scaled_height = max(1, int(round(height * scale)))
    if even:
        return _even(scaled_width), _even(scaled_height)
    return scaled_width, scaled_height


def create_snapshot(
    source: Path | str,
    target: Path | str,
    *,
    quality: int = SNAPSHOT_QUALITY,
) -> Path:
    """Write the first decodable frame of *source* as a JPEG image."""

    destination = Path(target)
    try:
        with av.open(str(source), mode="r") as container:
            stream = _video_stream(container)
            array = None
            for frame in container.decode(stream):
                array = frame.to_ndarray(format="rgb24")
                break
    except av.FFmpegError as exc:
        raise MediaError(f"Unable to decode {source}: {exc}") from exc
    if array is None:
        raise MediaError(f"{source} does not contain any frames")
    jpeg = simplejpeg.encode_jpeg(
        _prepare_rgb(array),
        quality=max(1, min(100, int(quality))),
        colorspace="RGB",
    )
    destination.write_bytes(jpeg)
    logger.debug("Snapshot written to %s", destination)
    return destination


def create_preview_clip(
    source: Path | str,
    target: Path | str,
    *,
    max_seconds: float = PREVIEW_SECONDS,
    fps: int = PREVIEW_FPS,
    max_width: int = PREVIEW_MAX_WIDTH,
    encoder: str | None = None,
) -> Path:
    """Render a short, downscaled, low frame-rate preview of *source*."""

    if fps <= 0:
        raise ValueError("fps must be positive")
    backend, attempted = select_preview_backend(encoder)
    if backend is None:
        raise MediaError(
            f"No preview encoder available (attempted codecs: {', '.join(attempted)})"
        )
    destination = Path(target)
    frame_interval = 1.0 / fps
    written = 0
    try:
        with av.open(str(source), mode="r") as input_container:
            stream = _video_stream(input_container)
            with av.open(str(destination), mode="w") as output:
                output_stream = None
                next_emit = 0.0
                for index, frame in enumerate(input_container.decode(stream)):
                    timestamp = frame.time if frame.time is not None else index * frame_interval
                    if timestamp > max_seconds:
                        break
                    if timestamp + 1e-6 < next_emit:
                        continue
                    next_emit += frame_interval
                    if output_stream is None:
                        width, height = preview_dimensions(
                            frame.width,
                            frame.height,
                            max_width,
                            even=backend.codec in EVEN_DIMENSION_CODECS,
                        )
                        output_stream = output.add_stream(backend.codec, rate=fps)
                        output_stream.width = width
                        output_stream.height = height
                        output_stream.pix_fmt = "yuv420p"
                        output_stream.codec_context.time_base = Fraction(1, fps)
                    scaled = frame.reformat(
                        width=output_stream.width,
                        height=output_stream.height,
                        format="yuv420p",
                    )
                    scaled.pts = written
                    scaled.time_base = Fraction(1, fps)
                    for packet in output_stream.encode(scaled):
                        output.mux(packet)
                    written += 1
                if output_stream is not None:
                    for packet in output_stream.encode():
                        output.mux(packet)
    except av.FFmpegError as exc:
        raise MediaError(f"Unable to render preview of {source}: {exc}") from exc
    if written == 0:
        try:
            destination.unlink()
        except OSError:
            pass
        raise MediaError(f"{source} does not contain any frames")
    logger.debug("Preview clip written to %s (%d frame(s), %s)", destination, written, backend.codec)
    return destination


__all__ = [
    "MediaError",
    "PREVIEW_FPS",
    "PREVIEW_SECONDS",
    "create_preview_clip",
    "create_snapshot",
    "preview_dimensions",
]
