"""Local LibreOffice executor: headless soffice converts office documents."""
import logging
import re
import shutil
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
from converter.conversion.models import ConversionTask, InputMethod
from converter.conversion.registry import EngineCapabilities
from converter.executors.base import ExecutionContext, ExecutionResult
from converter.executors.fetch import fetch_input
from converter.executors.process import ProcessExecutor, resource_exhausted

logger = logging.getLogger("converter.libreoffice")

_CORRUPT_PATTERNS = re.compile(
    r"source file could not be loaded|General Error|General input/output error|Format error",
    re.I,
)
_FILTER_PATTERNS = re.compile(r"no export filter|unknown filter", re.I)


def classify_failure(returncode: int, output: str) -> ExecutionError:
    tail = output.strip().splitlines()[-1] if output.strip() else f"soffice exited with {returncode}"
    if resource_exhausted(returncode, output):
        return ExecutionError(RESOURCE_EXHAUSTED, tail)
    if _FILTER_PATTERNS.search(output):
        return ExecutionError(UNSUPPORTED_CODEC, tail)
    if _CORRUPT_PATTERNS.search(output):
        return ExecutionError(CORRUPT_INPUT, tail)
    return ExecutionError(PROCESS_ERROR, tail)


def build_command(src: Path, out_dir: Path, output_format: str, profile_dir: Path, binary: str = "soffice") -> list[str]:
    # a private profile per run lets several soffice processes work side by side
    return [
        binary,
        f"-env:UserInstallation={profile_dir.resolve().as_uri()}",
        "--headless", "--invisible", "--nodefault", "--nolockcheck", "--nologo", "--norestore",
        "--convert-to", output_format.lower(),
        "--outdir", str(out_dir),
        str(src),
    ]


class LibreOfficeExecutor(ProcessExecutor):
    engine_id = "libreoffice"
    version_args = ("--version",)
    version_pattern = re.compile(r"LibreOffice\s+(\S+)")

    def __init__(self, binary: str = config.LIBREOFFICE_BINARY, **kwargs):
        super().__init__(binary, **kwargs)

    def classify(self, returncode: int, stderr: str) -> ExecutionError:
        return classify_failure(returncode, stderr)

    def execute(self, task: ConversionTask, capabilities: EngineCapabilities, ctx: ExecutionContext) -> ExecutionResult:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        src = fetch_input(task, ctx, capabilities.max_file_size, client=self._http_client)
        ctx.report_progress(10)
        run_dir = ctx.work_dir / f"libreoffice_{task.id}"
        out_dir = run_dir / "out"
        out_dir.mkdir(parents=True, exist_ok=True)
        dst = self.output_path(task)
        cmd = build_command(src, out_dir, task.output_format, run_dir / "profile", binary=self.binary)
        logger.info("Task %s: running %s", task.id, " ".join(cmd))
        started = time.monotonic()
        try:
            output = self.run_process(cmd, ctx)
            produced = out_dir / f"{src.stem}.{task.output_format.lower()}"
            if not produced.is_file() or produced.stat().st_size == 0:
                # soffice exits 0 when it cannot load or export a document
                error = classify_failure(0, output)
                if error.classification == PROCESS_ERROR:
                    error = ExecutionError(PROCESS_ERROR, "LibreOffice produced no output")
                raise error
            shutil.move(str(produced), str(dst))
        except BaseException:
            dst.unlink(missing_ok=True)
            raise
        finally:
            shutil.rmtree(run_dir, ignore_errors=True)
            if task.input_method == InputMethod.URL:
                src.unlink(missing_ok=True)
        ctx.report_progress(90)
        size = dst.stat().st_size
        logger.info(
            "Task %s: converted %s -> %s (%s bytes in %.1fs)",
            task.id, task.filename, dst.name, size, time.monotonic() - started,
        )
        return ExecutionResult(output_location=str(dst), output_size=size)
