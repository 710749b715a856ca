"""CloudConvert API v2 executor: job with import, convert and export tasks, polled until done."""
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional

import httpx

from converter import config
from converter.conversion.errors import (
    CORRUPT_INPUT,
    ENGINE_UNAVAILABLE,
    INVALID_INPUT,
    NETWORK_ERROR,
    PROCESS_ERROR,
    REMOTE_ERROR,
    TIMEOUT,
    UNSUPPORTED_CODEC,
    ExecutionCancelled,
    ExecutionError,
)
from converter.conversion.models import ConversionOptions, ConversionTask, InputMethod
from converter.conversion.registry import EngineCapabilities
from converter.executors.base import ExecutionContext, ExecutionResult, Executor
from converter.executors.fetch import download, fetch_input
from converter.executors.ffmpeg import AUDIO_BITRATE, AUDIO_OUTPUTS, QUALITY_CRF, RESOLUTION_MAP

logger = logging.getLogger("converter.cloudconvert")

IMPORT_TASK = "import-file"
CONVERT_TASK = "convert-file"
EXPORT_TASK = "export-file"
TASK_ORDER = {IMPORT_TASK: 0, CONVERT_TASK: 1, EXPORT_TASK: 2}

REQUEST_TIMEOUT = 30.0
CONNECT_TIMEOUT = 10.0

VIDEO_OUTPUTS = frozenset({
    "mp4", "avi", "mov", "wmv", "flv", "mkv", "webm", "m4v", "3gp", "ogv", "mpeg", "mpg",
})


def convert_options(output_format: str, options: ConversionOptions) -> dict[str, Any]:
    """Map the option snapshot onto CloudConvert convert-task parameters."""
    fmt = output_format.lower()
    params: dict[str, Any] = {}
    quality = options.video_quality or "medium"
    if fmt in VIDEO_OUTPUTS:
        params["crf"] = QUALITY_CRF.get(quality, 23)
        dims = RESOLUTION_MAP.get(options.resolution or "original")
        if dims:
            params["width"], params["height"] = dims
            params["fit"] = "max"
        if options.framerate and options.framerate != "original":
            fps = float(options.framerate)
            params["fps"] = int(fps) if fps.is_integer() else fps
    elif fmt in AUDIO_OUTPUTS and AUDIO_OUTPUTS[fmt][1]:
        params["audio_bitrate"] = int(AUDIO_BITRATE.get(quality, "192k").rstrip("k"))
    return params


def _task_error(task: dict) -> ExecutionError:
    code = (task.get("code") or "").upper()
    message = task.get("message") or f"task {task.get('name')} failed"
    if code == "INVALID_CONVERSION_TYPE" or code.startswith("UNSUPPORTED"):
        return ExecutionError(UNSUPPORTED_CODEC, f"{code}: {message}")
    if code == "INPUT_TASK_FAILED" or code.startswith("CORRUPT"):
        return ExecutionError(CORRUPT_INPUT, f"{code}: {message}")
    return ExecutionError(REMOTE_ERROR, f"{code or 'ERROR'}: {message}")


def _deadline_timeout(ctx: ExecutionContext, cap: float) -> httpx.Timeout:
    """Per-request timeout that never runs past the execution deadline."""
    limit = max(0.1, min(cap, ctx.remaining()))
    return httpx.Timeout(limit, connect=min(CONNECT_TIMEOUT, limit))


def _timeout_error(ctx: Optional[ExecutionContext], detail: str) -> ExecutionError:
    if ctx is not None and ctx.expired():
        return ExecutionError(TIMEOUT, f"deadline of {ctx.timeout:.0f}s exceeded: {detail}", retryable=True)
    return ExecutionError(NETWORK_ERROR, detail)


def _status_error(resp: httpx.Response) -> ExecutionError:
    try:
        detail = resp.json().get("message") or resp.text
    except ValueError:
        detail = resp.text
    detail = f"CloudConvert returned {resp.status_code}: {detail[:300]}"
    if resp.status_code in (401, 403):
        return ExecutionError(ENGINE_UNAVAILABLE, detail)
    if resp.status_code in (400, 422):
        return ExecutionError(INVALID_INPUT, detail, retryable=False)
    if resp.status_code == 429 or resp.status_code >= 500:
        return ExecutionError(NETWORK_ERROR, detail)
    return ExecutionError(REMOTE_ERROR, detail)


class CloudConvertExecutor(Executor):
    engine_id = "cloudconvert"

    def __init__(
        self,
        api_key: str = config.CLOUDCONVERT_API_KEY,
        base_url: str = config.CLOUDCONVERT_API_URL,
        output_dir: Path = config.OUTPUT_DIR,
        poll_interval: float = config.CLOUDCONVERT_POLL_INTERVAL,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.output_dir = Path(output_dir)
        self.poll_interval = poll_interval
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=httpx.Timeout(REQUEST_TIMEOUT, connect=CONNECT_TIMEOUT),
            transport=self._transport,
            follow_redirects=True,
        )

    def _request(
        self,
        client: httpx.Client,
        method: str,
        url: str,
        ctx: Optional[ExecutionContext] = None,
        **kwargs,
    ) -> dict:
        if ctx is not None:
            kwargs["timeout"] = _deadline_timeout(ctx, REQUEST_TIMEOUT)
        try:
            resp = client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise _timeout_error(ctx, f"CloudConvert request timed out: {e}")
        except httpx.HTTPError as e:
            raise ExecutionError(NETWORK_ERROR, f"CloudConvert request failed: {e}")
        if resp.status_code >= 400:
            raise _status_error(resp)
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json().get("data", {})

    def probe(self) -> bool:
        if not self.api_key:
            logger.info("CLOUDCONVERT_API_KEY not set; remote engine disabled")
            return False
        with self._client() as client:
            try:
                resp = client.get("/users/me")
            except httpx.HTTPError as e:
                logger.warning("CloudConvert probe failed: %s", e)
                return False
        return resp.status_code == 200

    def job_payload(self, task: ConversionTask) -> dict:
        if task.input_method == InputMethod.URL:
            import_task = {"operation": "import/url", "url": task.input_location, "filename": task.filename}
        else:
            import_task = {"operation": "import/upload"}
        convert_task = {
            "operation": "convert",
            "input": IMPORT_TASK,
            "input_format": task.input_format,
            "output_format": task.output_format,
        }
        convert_task.update(convert_options(task.output_format, task.options))
        return {
            "tag": task.id,
            "tasks": {
                IMPORT_TASK: import_task,
                CONVERT_TASK: convert_task,
                EXPORT_TASK: {"operation": "export/url", "input": CONVERT_TASK},
            },
        }

    def execute(self, task: ConversionTask, capabilities: EngineCapabilities, ctx: ExecutionContext) -> ExecutionResult:
        if not self.api_key:
            raise ExecutionError(ENGINE_UNAVAILABLE, "CLOUDCONVERT_API_KEY is not configured")
        self.output_dir.mkdir(parents=True, exist_ok=True)
        with self._client() as client:
            src = None
            if task.input_method == InputMethod.UPLOAD:
                src = fetch_input(task, ctx, capabilities.max_file_size)
            ctx.checkpoint()
            job = self._request(client, "POST", "/jobs", ctx, json=self.job_payload(task))
            job_id = job.get("id")
            if not job_id:
                raise ExecutionError(REMOTE_ERROR, "CloudConvert did not return a job id")
            logger.info("Task %s: CloudConvert job %s created", task.id, job_id)
            try:
                if src is not None:
                    ctx.checkpoint()
                    self._upload(job, src, ctx)
                ctx.report_progress(20)
                job = self._wait(client, job_id, ctx)
            except (ExecutionCancelled, ExecutionError) as e:
                if isinstance(e, ExecutionCancelled) or e.classification == TIMEOUT:
                    self._delete_job(client, job_id)
                raise
            ctx.report_progress(80)
            return self._download_export(task, job, ctx)

    def _upload(self, job: dict, src: Path, ctx: ExecutionContext) -> None:
        import_task = self._find_task(job, IMPORT_TASK)
        form = ((import_task or {}).get("result") or {}).get("form") or {}
        if not form.get("url"):
            raise ExecutionError(REMOTE_ERROR, "CloudConvert import/upload returned no upload form")
        # upload form is pre-signed; no bearer header
        uploader = httpx.Client(transport=self._transport)
        with uploader, open(src, "rb") as f:
            try:
                resp = uploader.post(
                    form["url"],
                    data=form.get("parameters") or {},
                    files={"file": (src.name, f)},
                    timeout=_deadline_timeout(ctx, float(config.URL_DOWNLOAD_TIMEOUT)),
                )
            except httpx.TimeoutException as e:
                raise _timeout_error(ctx, f"upload to CloudConvert timed out: {e}")
            except httpx.HTTPError as e:
                raise ExecutionError(NETWORK_ERROR, f"upload to CloudConvert failed: {e}")
        if resp.status_code >= 400:
            raise _status_error(resp)

    def _wait(self, client: httpx.Client, job_id: str, ctx: ExecutionContext) -> dict:
        while True:
            ctx.checkpoint()
            job = self._request(client, "GET", f"/jobs/{job_id}", ctx)
            status = job.get("status")
            if status == "finished":
                return job
            if status == "error":
                failed = [t for t in job.get("tasks", []) if t.get("status") == "error"]
                # the first failing task carries the root cause, later ones report INPUT_TASK_FAILED
                failed.sort(key=lambda t: TASK_ORDER.get(t.get("name"), len(TASK_ORDER)))
                if failed:
                    raise _task_error(failed[0])
                raise ExecutionError(REMOTE_ERROR, f"CloudConvert job {job_id} failed")
            self._sleep(max(0.0, min(self.poll_interval, ctx.remaining())))

    def _delete_job(self, client: httpx.Client, job_id: str) -> None:
        try:
            client.delete(f"/jobs/{job_id}", timeout=CONNECT_TIMEOUT)
            logger.info("Deleted CloudConvert job %s", job_id)
        except httpx.HTTPError as e:
            logger.warning("Could not delete CloudConvert job %s: %s", job_id, e)

    @staticmethod
    def _find_task(job: dict, name: str) -> Optional[dict]:
        for t in job.get("tasks", []):
            if t.get("name") == name:
                return t
        return None

    def _download_export(self, task: ConversionTask, job: dict, ctx: ExecutionContext) -> ExecutionResult:
        export = self._find_task(job, EXPORT_TASK)
        files = ((export or {}).get("result") or {}).get("files") or []
        if not files or not files[0].get("url"):
            raise ExecutionError(PROCESS_ERROR, "CloudConvert export produced no file")
        stem = Path(task.filename).stem or "output"
        dest = self.output_dir / f"{task.id[:8]}_{stem}.{task.output_format}"
        with httpx.Client(transport=self._transport, follow_redirects=True) as http_client:
            download(files[0]["url"], dest, ctx, max_bytes=2 ** 63, client=http_client)
        size = dest.stat().st_size
        logger.info("Task %s: CloudConvert output saved as %s (%s bytes)", task.id, dest.name, size)
        return ExecutionResult(output_location=str(dest), output_size=size)
