from .base import ExecutionContext, ExecutionResult, Executor
from .cloudconvert import CloudConvertExecutor
from .ffmpeg import FFmpegExecutor
from .imagemagick import ImageMagickExecutor
from .libreoffice import LibreOfficeExecutor
from .process import ProcessExecutor


def default_executors() -> dict[str, Executor]:
    """One executor per built-in engine, keyed by engine id."""
    executors = [FFmpegExecutor(), ImageMagickExecutor(), LibreOfficeExecutor(), CloudConvertExecutor()]
    return {e.engine_id: e for e in executors}


__all__ = [
    "CloudConvertExecutor",
    "ExecutionContext",
    "ExecutionResult",
    "Executor",
    "FFmpegExecutor",
    "ImageMagickExecutor",
    "LibreOfficeExecutor",
    "ProcessExecutor",
    "default_executors",
]
