"""Local ImageMagick executor for still images, vector art and PDF pages."""
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
from converter.conversion.registry import EngineCapabilities
from converter.executors.base import ExecutionContext, ExecutionResult
from converter.executors.fetch import fetch_input
from converter.executors.ffmpeg import RESOLUTION_MAP
from converter.executors.process import ProcessExecutor, resource_exhausted

logger = logging.getLogger("converter.imagemagick")

QUALITY_IMAGE = {"high": 92, "medium": 85, "low": 70}
LOSSY_OUTPUTS = {"jpg", "jpeg", "webp", "avif", "heic"}
# outputs that keep every frame or page; others take the first one
MULTI_FRAME_OUTPUTS = {"gif", "webp", "tiff", "pdf"}
VECTOR_INPUTS = {"pdf", "svg", "eps"}
OPAQUE_OUTPUTS = {"jpg", "jpeg", "bmp"}

_RESOURCE_PATTERNS = re.compile(r"cache resources exhausted|memory allocation failed|ResourceLimitError", re.I)
_CODEC_PATTERNS = re.compile(r"no (en|de)code delegate|not authorized|NoEncodeDelegate|NoDecodeDelegate", re.I)
_CORRUPT_PATTERNS = re.compile(
    r"improper image header|corrupt|insufficient image data|unexpected end-of-file|premature end"
    r"|not a JPEG file|negative or zero image size|length and filesize do not match",
    re.I,
)


def classify_failure(returncode: int, output: str) -> ExecutionError:
    tail = output.strip().splitlines()[-1] if output.strip() else f"convert exited with {returncode}"
    if resource_exhausted(returncode, output) or _RESOURCE_PATTERNS.search(output):
        return ExecutionError(RESOURCE_EXHAUSTED, tail)
    # "not authorized": policy.xml forbids the coder (often PDF)
    if _CODEC_PATTERNS.search(output):
        return ExecutionError(UNSUPPORTED_CODEC, tail)
    if _CORRUPT_PATTERNS.search(output):
        return ExecutionError(CORRUPT_INPUT, tail)
    return ExecutionError(PROCESS_ERROR, tail)


def build_command(
    src: Path,
    dst: Path,
    input_format: str,
    output_format: str,
    options: ConversionOptions,
    binary: str = "convert",
) -> list[str]:
    fmt = output_format.lower()
    cmd = [binary]
    if input_format.lower() in VECTOR_INPUTS:
        cmd += ["-density", "150"]
    cmd.append(str(src) if fmt in MULTI_FRAME_OUTPUTS else f"{src}[0]")
    cmd.append("-auto-orient")
    dims = RESOLUTION_MAP.get(options.resolution or "original")
    if dims:
        # shrink only, keep aspect
        cmd += ["-resize", f"{dims[0]}x{dims[1]}>"]
    if fmt in OPAQUE_OUTPUTS:
        cmd += ["-background", "white", "-alpha", "remove", "-alpha", "off"]
    if fmt in LOSSY_OUTPUTS:
        cmd += ["-quality", str(QUALITY_IMAGE.get(options.video_quality or "medium", 85))]
    if fmt in ("jpg", "jpeg"):
        cmd += ["-interlace", "Plane"]
    elif fmt == "tiff":
        cmd += ["-compress", "LZW"]
    cmd.append(str(dst))
    return cmd


class ImageMagickExecutor(ProcessExecutor):
    engine_id = "imagemagick"
    version_args = ("-version",)
    version_pattern = re.compile(r"ImageMagick (\S+)")

    def __init__(self, binary: str = config.IMAGEMAGICK_BINARY, **kwargs):
        super().__init__(binary, **kwargs)

    def classify(self, returncode: int, stderr: str) -> ExecutionError:
        return classify_failure(returncode, stderr)

    def execute(self, task: ConversionTask, capabilities: EngineCapabilities, ctx: ExecutionContext) -> ExecutionResult:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        src = fetch_input(task, ctx, capabilities.max_file_size, client=self._http_client)
        ctx.report_progress(10)
        dst = self.output_path(task)
        cmd = build_command(src, dst, task.input_format, task.output_format, task.options, binary=self.binary)
        logger.info("Task %s: running %s", task.id, " ".join(cmd))
        started = time.monotonic()
        try:
            self.run_process(cmd, ctx)
            if not dst.is_file() or dst.stat().st_size == 0:
                raise ExecutionError(PROCESS_ERROR, "ImageMagick reported success but produced no output")
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
        return ExecutionResult(output_location=str(dst), output_size=size)
