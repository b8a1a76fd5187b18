"""Codec settings for capture output and encoder discovery for previews."""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterator

try:  # pragma: no cover - dependency availability varies
    import av  # type: ignore
except ImportError:  # pragma: no cover - dependency availability varies
    av = None  # type: ignore[assignment]


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureProfile:
    """Output settings shared by the capture and finalization invocations."""

    video_codec: str = "libvpx"
    video_bitrate: str = "1M"
    pixel_format: str = "yuv420p"
    keyframe_interval: int = 30
    audio_codec: str = "libopus"
    audio_bitrate: str = "128k"
    container: str = "webm"
    extension: str = ".webm"
    media_type: str = "video/webm"
    max_muxing_queue_size: int = 1024

    def capture_output_args(self, fps: int, *, include_audio: bool) -> list[str]:
        args = [
            "-c:v",
            self.video_codec,
            "-b:v",
            self.video_bitrate,
            "-pix_fmt",
            self.pixel_format,
            "-r",
            str(int(fps)),
            "-g",
            str(self.keyframe_interval),
        ]
        if include_audio:
            args += ["-c:a", self.audio_codec, "-b:a", self.audio_bitrate]
        args += [
            "-f",
            self.container,
            "-flush_packets",
            "1",
            "-max_muxing_queue_size",
            str(self.max_muxing_queue_size),
        ]
        return args

    def finalize_args(self) -> list[str]:
        return [
            "-c:v",
            self.video_codec,
            "-c:a",
            self.audio_codec,
            "-b:v",
            self.video_bitrate,
            "-map",
            "0",
        ]


DEFAULT_CAPTURE_PROFILE = CaptureProfile()


@dataclass(frozen=True)
class PreviewEncoderBackend:
    """A concrete encoder usable for the animated preview clip."""

    key: str
    codec: str
    label: str
    hardware: bool = False
    requires_even_dimensions: bool = True


_PREVIEW_BACKENDS: tuple[PreviewEncoderBackend, ...] = (
    PreviewEncoderBackend(
        key="libx264",
        codec="libx264",
        label="libx264 (software)",
    ),
    PreviewEncoderBackend(
        key="openh264",
        codec="libopenh264",
        label="OpenH264 (software)",
    ),
    PreviewEncoderBackend(
        key="videotoolbox",
        codec="h264_videotoolbox",
        label="VideoToolbox (macOS hardware)",
        hardware=True,
    ),
    PreviewEncoderBackend(
        key="mpeg4",
        codec="mpeg4",
        label="MPEG-4 Part 2 (software)",
    ),
)

_PREVIEW_BY_KEY = {backend.key: backend for backend in _PREVIEW_BACKENDS}
_PREVIEW_ALIASES = {
    "auto": "auto",
    "default": "auto",
    "software": "libx264",
    "x264": "libx264",
    "h264": "libx264",
    "hardware": "videotoolbox",
    "h264_videotoolbox": "videotoolbox",
    "libopenh264": "openh264",
}

EVEN_DIMENSION_CODECS: frozenset[str] = frozenset(
    backend.codec for backend in _PREVIEW_BACKENDS if backend.requires_even_dimensions
)
"""Codec names which require even frame dimensions."""


def normalise_encoder_choice(choice: str | None) -> str:
    """Normalise a user-provided encoder choice string."""

    if not choice:
        return "auto"
    key = choice.strip().lower()
    if not key:
        return "auto"
    return _PREVIEW_ALIASES.get(key, key)


def _iter_candidates(preference: str) -> Iterator[PreviewEncoderBackend]:
    preferred = _PREVIEW_BY_KEY.get(preference)
    if preferred is None:
        preferred = next(
            (backend for backend in _PREVIEW_BACKENDS if backend.codec == preference), None
        )
    if preferred is None and preference != "auto":
        logger.debug("Unknown preview encoder preference %r; falling back to auto", preference)
    if preferred is not None:
        yield preferred
    for backend in _PREVIEW_BACKENDS:
        if backend is not preferred:
            yield backend


def probe_encoder(codec: str) -> bool:
    """Return ``True`` when PyAV can open *codec* for encoding."""

    if av is None:  # pragma: no cover - dependency availability varies
        return False
    try:
        context = av.CodecContext.create(codec, "w")
    except av.FFmpegError as exc:  # pragma: no cover - codec probing failure
        logger.debug("Codec %s unavailable: %s", codec, exc)
        return False
    except Exception as exc:  # pragma: no cover - defensive guard
        logger.debug("Failed to initialise codec %s: %s", codec, exc)
        return False
    if not getattr(context, "is_encoder", True):
        logger.debug("Codec %s is not an encoder", codec)
        return False
    return True


def select_preview_backend(
    preference: str | None = None,
    *,
    allow_fallback: bool = True,
) -> tuple[PreviewEncoderBackend | None, tuple[str, ...]]:
    """Select a preview encoder based on ``preference``.

    Returns ``(backend, attempted_codecs)``; ``backend`` is ``None`` when no
    usable encoder was discovered.
    """

    attempted: list[str] = []
    for backend in _iter_candidates(normalise_encoder_choice(preference)):
        attempted.append(backend.codec)
        if probe_encoder(backend.codec):
            return backend, tuple(attempted)
        if not allow_fallback:
            break
    return None, tuple(attempted)


__all__ = [
    "CaptureProfile",
    "DEFAULT_CAPTURE_PROFILE",
    "EVEN_DIMENSION_CODECS",
    "PreviewEncoderBackend",
    "normalise_encoder_choice",
    "probe_encoder",
    "select_preview_backend",
]
