"""Local command-line engines: run one process per attempt under the execution deadline."""
import logging
import re
import subprocess
from pathlib import Path
from typing import Optional, Sequence

import httpx

from converter import config
from converter.conversion.errors import (
    ENGINE_UNAVAILABLE,
    PROCESS_ERROR,
    TIMEOUT,
    ExecutionCancelled,
    ExecutionError,
)
from converter.conversion.models import ConversionTask
from converter.executors.base import ExecutionContext, Executor

logger = logging.getLogger("converter.process")

STDERR_TAIL_BYTES = 8192

RESOURCE_PATTERNS = re.compile(
    r"Cannot allocate memory|Out of memory|No space left on device|Resource temporarily unavailable|Too many open files",
    re.I,
)


def resource_exhausted(returncode: int, stderr: str) -> bool:
    # -9 / 137: killed, almost always the OOM killer
    return returncode in (-9, 137) or bool(RESOURCE_PATTERNS.search(stderr))


class ProcessExecutor(Executor):
    """Base for engines that shell out to a local binary.

    Subclasses set `engine_id`, build their argument list and override `classify`.
    Process output goes to a per-attempt log file in the work dir, which is always removed.
    """

    version_args: Sequence[str] = ("-version",)
    version_pattern = re.compile(r"version (\S+)")

    def __init__(
        self,
        binary: str,
        output_dir: Path = config.OUTPUT_DIR,
        poll_interval: float = 0.25,
        http_client: Optional[httpx.Client] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.binary = binary
        self.output_dir = Path(output_dir)
        self.poll_interval = poll_interval
        self._http_client = http_client

    def _version_output(self) -> Optional[subprocess.CompletedProcess]:
        try:
            return subprocess.run([self.binary, *self.version_args], capture_output=True, text=True, timeout=30)
        except (FileNotFoundError, PermissionError, subprocess.TimeoutExpired):
            return None

    def probe(self) -> bool:
        result = self._version_output()
        return result is not None and result.returncode == 0

    def version(self) -> Optional[str]:
        result = self._version_output()
        if result is None:
            return None
        m = self.version_pattern.search(result.stdout or "")
        return m.group(1) if m else None

    def output_path(self, task: ConversionTask) -> Path:
        stem = Path(task.filename).stem or "output"
        return self.output_dir / f"{task.id[:8]}_{stem}.{task.output_format}"

    def classify(self, returncode: int, stderr: str) -> ExecutionError:
        tail = stderr.strip().splitlines()[-1] if stderr.strip() else f"{self.engine_id} exited with {returncode}"
        return ExecutionError(PROCESS_ERROR, tail)

    def run_process(self, cmd: list[str], ctx: ExecutionContext, cwd: Optional[Path] = None) -> str:
        """Run `cmd` to completion, killing it on cancellation or deadline. Returns the stderr tail.

        Non-zero exits are raised through `classify`.
        """
        ctx.work_dir.mkdir(parents=True, exist_ok=True)
        log_path = ctx.work_dir / f"{self.engine_id}_{ctx.task_id}.log"
        try:
            with open(log_path, "w+b") as err:
                try:
                    proc = subprocess.Popen(
                        cmd, stdin=subprocess.DEVNULL, stdout=err, stderr=subprocess.STDOUT, cwd=cwd,
                    )
                except FileNotFoundError:
                    logger.error("%s not found. Install it for local %s conversion.", self.binary, self.engine_id)
                    raise ExecutionError(ENGINE_UNAVAILABLE, f"{self.binary} not installed")
                try:
                    returncode = self._wait(proc, ctx)
                finally:
                    if proc.poll() is None:
                        self._kill(proc)
                err.seek(0, 2)
                err.seek(max(0, err.tell() - STDERR_TAIL_BYTES))
                stderr = err.read().decode("utf-8", errors="replace")
        finally:
            log_path.unlink(missing_ok=True)
        if returncode != 0:
            logger.warning("%s failed for task %s (exit %s): %s", self.engine_id, ctx.task_id, returncode, stderr[-500:])
            raise self.classify(returncode, stderr)
        return stderr

    def _wait(self, proc: subprocess.Popen, ctx: ExecutionContext) -> int:
        while True:
            try:
                return proc.wait(timeout=max(0.01, min(self.poll_interval, ctx.remaining())))
            except subprocess.TimeoutExpired:
                pass
            if ctx.cancelled():
                self._kill(proc)
                raise ExecutionCancelled(f"task {ctx.task_id} cancelled during {self.engine_id} run")
            if ctx.expired():
                self._kill(proc)
                raise ExecutionError(TIMEOUT, f"{self.engine_id} exceeded {ctx.timeout:.0f}s deadline", retryable=True)

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        proc.kill()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.error("pid %s did not exit after SIGKILL", proc.pid)
