"""Local FFmpeg executor: builds an argument list from the option snapshot and runs it under a deadline."""
import logging
import re
import time
from pathlib import Path

from converter import config
from converter.conversion.errors import (
    CORRUPT_INPUT,
    PROCESS_ERROR,
    RESOURCE_EXHAUSTED,
    UNSUPPORTED_CODEC,
    ExecutionError,
)
from converter.conversion.models import ConversionOptions, ConversionTask, InputMethod
from converter.conversion.probe import media_duration
from converter.conversion.registry import EngineCapabilities
from converter.executors.base import ExecutionContext, ExecutionResult
from converter.executors.fetch import fetch_input
from converter.executors.process import ProcessExecutor, resource_exhausted

logger = logging.getLogger("converter.ffmpeg")

RESOLUTION_MAP = {
    "4k": (3840, 2160),
    "1080p": (1920, 1080),
    "720p": (1280, 720),
    "480p": (854, 480),
}
QUALITY_CRF = {"high": 18, "medium": 23, "low": 28}
# mpeg4/mpeg2/wmv2/theora take a quantiser instead of CRF (lower is better, theora is inverted)
QUALITY_QSCALE = {"high": 2, "medium": 5, "low": 10}
QUALITY_THEORA = {"high": 9, "medium": 7, "low": 5}
QUALITY_WEBP = {"high": 90, "medium": 75, "low": 50}
AUDIO_BITRATE = {"high": "320k", "medium": "192k", "low": "128k"}

# output format -> (audio codec, uses bitrate)
AUDIO_OUTPUTS = {
    "mp3": ("libmp3lame", True),
    "aac": ("aac", True),
    "m4a": ("aac", True),
    "ogg": ("libvorbis", True),
    "opus": ("libopus", True),
    "wav": ("pcm_s16le", False),
    "flac": ("flac", False),
}
H264_CONTAINERS = {"mp4", "m4v", "mov", "mkv", "flv", "ts", "3gp"}
FASTSTART_CONTAINERS = {"mp4", "m4v", "mov"}

_CORRUPT_PATTERNS = re.compile(
    r"Invalid data found when processing input|moov atom not found|could not find codec parameters"
    r"|Error while decoding|corrupt|truncat|EBML header parsing failed|End of file",
    re.I,
)
_CODEC_PATTERNS = re.compile(
    r"Unknown encoder|Encoder .* not found|Decoder .* not found|codec not currently supported in container"
    r"|Could not find tag for codec|Unsupported codec|Requested output format .* is not a suitable output format"
    r"|Unable to find a suitable output format|does not support|Incompatible pixel format",
    re.I,
)


def classify_failure(returncode: int, stderr: str) -> ExecutionError:
    """Map an ffmpeg exit into the execution error taxonomy."""
    tail = stderr.strip().splitlines()[-1] if stderr.strip() else f"ffmpeg exited with {returncode}"
    if resource_exhausted(returncode, stderr):
        return ExecutionError(RESOURCE_EXHAUSTED, tail)
    if _CODEC_PATTERNS.search(stderr):
        return ExecutionError(UNSUPPORTED_CODEC, tail)
    if _CORRUPT_PATTERNS.search(stderr):
        return ExecutionError(CORRUPT_INPUT, tail)
    return ExecutionError(PROCESS_ERROR, tail)


def _video_filters(options: ConversionOptions, output_format: str) -> list[str]:
    filters = []
    framerate = options.framerate
    if output_format == "gif" and (not framerate or framerate == "original"):
        framerate = "10"
    if framerate and framerate != "original":
        filters.append(f"fps={framerate}")
    dims = RESOLUTION_MAP.get(options.resolution or "original")
    if dims:
        w, h = dims
        filters.append(f"scale=w={w}:h={h}:force_original_aspect_ratio=decrease")
        # x264 and friends need even dimensions
        filters.append("scale=trunc(iw/2)*2:trunc(ih/2)*2")
    if output_format == "gif":
        filters.append("split[s0][s1];[s0]palettegen[p];[s1][p]paletteuse")
    return filters


def build_command(
    src: Path,
    dst: Path,
    output_format: str,
    options: ConversionOptions,
    binary: str = "ffmpeg",
) -> list[str]:
    """Argument list for one conversion. Quality maps to CRF, quantiser or bitrate depending on the codec."""
    fmt = output_format.lower()
    quality = options.video_quality or "medium"
    cmd = [binary, "-hide_banner", "-nostdin", "-y", "-i", str(src)]

    if fmt in AUDIO_OUTPUTS:
        codec, uses_bitrate = AUDIO_OUTPUTS[fmt]
        cmd += ["-vn", "-c:a", codec]
        if uses_bitrate:
            cmd += ["-b:a", AUDIO_BITRATE.get(quality, "192k")]
        cmd.append(str(dst))
        return cmd

    filters = _video_filters(options, fmt)
    if filters:
        cmd += ["-vf", ",".join(filters)]

    crf = str(QUALITY_CRF.get(quality, 23))
    qscale = str(QUALITY_QSCALE.get(quality, 5))
    if fmt in H264_CONTAINERS:
        cmd += ["-c:v", "libx264", "-preset", "veryfast", "-crf", crf, "-pix_fmt", "yuv420p", "-c:a", "aac", "-b:a", "128k"]
        if fmt in FASTSTART_CONTAINERS:
            cmd += ["-movflags", "+faststart"]
    elif fmt == "webm":
        cmd += ["-c:v", "libvpx-vp9", "-crf", crf, "-b:v", "0", "-c:a", "libopus"]
    elif fmt == "ogv":
        cmd += ["-c:v", "libtheora", "-q:v", str(QUALITY_THEORA.get(quality, 7)), "-c:a", "libvorbis"]
    elif fmt == "avi":
        cmd += ["-c:v", "mpeg4", "-q:v", qscale, "-c:a", "libmp3lame", "-b:a", "128k"]
    elif fmt == "wmv":
        cmd += ["-c:v", "wmv2", "-q:v", qscale, "-c:a", "wmav2", "-b:a", "128k"]
    elif fmt in ("mpg", "mpeg"):
        cmd += ["-c:v", "mpeg2video", "-q:v", qscale, "-c:a", "mp2", "-b:a", "192k"]
    elif fmt == "gif":
        cmd += ["-loop", "0", "-an"]
    elif fmt == "webp":
        cmd += [
            "-c:v", "libwebp", "-lossless", "0",
            "-q:v", str(QUALITY_WEBP.get(quality, 75)),
            "-loop", "0", "-an",
        ]
    cmd.append(str(dst))
    return cmd


class FFmpegExecutor(ProcessExecutor):
    engine_id = "ffmpeg"
    version_pattern = re.compile(r"ffmpeg version (\S+)")

    def __init__(self, binary: str = config.FFMPEG_BINARY, **kwargs):
        super().__init__(binary, **kwargs)

    def classify(self, returncode: int, stderr: str) -> ExecutionError:
        return classify_failure(returncode, stderr)

    def execute(self, task: ConversionTask, capabilities: EngineCapabilities, ctx: ExecutionContext) -> ExecutionResult:
        ctx.work_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        src = fetch_input(task, ctx, capabilities.max_file_size, client=self._http_client)
        ctx.report_progress(10)
        dst = self.output_path(task)
        cmd = build_command(src, dst, task.output_format, task.options, binary=self.binary)
        logger.info("Task %s: running %s", task.id, " ".join(cmd))
        started = time.monotonic()
        try:
            self.run_process(cmd, ctx)
            if not dst.is_file() or dst.stat().st_size == 0:
                raise ExecutionError(PROCESS_ERROR, "ffmpeg reported success but produced no output")
        except BaseException:
            dst.unlink(missing_ok=True)
            raise
        finally:
            if task.input_method == InputMethod.URL:
                src.unlink(missing_ok=True)
        ctx.report_progress(90)
        size = dst.stat().st_size
        logger.info(
            "Task %s: converted %s -> %s (%s bytes in %.1fs)",
            task.id, task.filename, dst.name, size, time.monotonic() - started,
        )
        return ExecutionResult(output_location=str(dst), output_size=size, duration_seconds=media_duration(dst))
