"""Bring a task's input to local disk for process-based engines."""
import logging
from pathlib import Path
from typing import Optional

import httpx

from converter import config
from converter.conversion.errors import (
    FILE_TOO_LARGE,
    INVALID_INPUT,
    NETWORK_ERROR,
    TIMEOUT,
    ExecutionError,
)
from converter.conversion.models import ConversionTask, InputMethod
from converter.executors.base import ExecutionContext

logger = logging.getLogger("converter.fetch")

CHUNK_SIZE = 1024 * 1024


def _too_large(size: int, max_bytes: int) -> ExecutionError:
    max_mb = max_bytes // (1024 * 1024)
    return ExecutionError(FILE_TOO_LARGE, f"input is {size} bytes, limit is {max_mb} MB", retryable=False)


def fetch_input(
    task: ConversionTask,
    ctx: ExecutionContext,
    max_bytes: int,
    client: Optional[httpx.Client] = None,
) -> Path:
    """Return a local path for the task input, enforcing `max_bytes` before any conversion starts."""
    if task.input_method == InputMethod.UPLOAD:
        path = Path(task.input_location)
        if not path.is_file():
            raise ExecutionError(INVALID_INPUT, f"uploaded file is missing: {path.name}", retryable=False)
        size = path.stat().st_size
        if size > max_bytes:
            raise _too_large(size, max_bytes)
        return path
    return download(task.input_location, ctx.work_dir / f"input_{task.id}.{task.input_format}", ctx, max_bytes, client)


def download(
    url: str,
    dest: Path,
    ctx: ExecutionContext,
    max_bytes: int,
    client: Optional[httpx.Client] = None,
) -> Path:
    """Stream `url` to `dest`. Timeouts are bounded by the execution deadline."""
    timeout = max(1.0, min(float(config.URL_DOWNLOAD_TIMEOUT), ctx.remaining()))
    own_client = client is None
    client = client or httpx.Client(follow_redirects=True, headers={"User-Agent": "FileConverter/1.0"})
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        with client.stream("GET", url, timeout=timeout) as resp:
            if resp.status_code >= 500:
                raise ExecutionError(NETWORK_ERROR, f"URL returned status {resp.status_code}")
            if resp.status_code >= 400:
                raise ExecutionError(INVALID_INPUT, f"URL returned status {resp.status_code}", retryable=False)
            declared = resp.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > max_bytes:
                raise _too_large(int(declared), max_bytes)
            total = 0
            with open(dest, "wb") as f:
                for chunk in resp.iter_bytes(CHUNK_SIZE):
                    total += len(chunk)
                    if total > max_bytes:
                        raise _too_large(total, max_bytes)
                    f.write(chunk)
                    ctx.checkpoint(force=False)
        logger.info("Downloaded %s (%s bytes) for task %s", url, total, ctx.task_id)
        return dest
    except httpx.TimeoutException as e:
        dest.unlink(missing_ok=True)
        raise ExecutionError(TIMEOUT, f"download timed out: {e}", retryable=True)
    except httpx.HTTPError as e:
        dest.unlink(missing_ok=True)
        raise ExecutionError(NETWORK_ERROR, f"download failed: {e}", retryable=True)
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    finally:
        if own_client:
            client.close()
