"""API routes for conversion tasks."""
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel, ConfigDict, Field

from converter import config
from converter.conversion.errors import (
    ConflictError,
    DispatchError,
    NotFoundError,
    NotSupportedError,
    ValidationError,
)
from converter.conversion.models import ConversionTask, InputMethod, TaskState
from converter.conversion.service import ConversionService, CreateTaskRequest, get_conversion_service

logger = logging.getLogger("converter.api")
router = APIRouter(prefix="/api", tags=["converter"])


class CreateTaskBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    input_method: str = Field("url", alias="inputMethod")
    input_url: str = Field(..., alias="inputUrl")
    filename: Optional[str] = None
    input_format: Optional[str] = Field(None, alias="inputFormat")
    output_format: str = Field(..., alias="outputFormat")
    conversion_options: Optional[dict[str, Any]] = Field(None, alias="conversionOptions")
    user_id: Optional[str] = Field(None, alias="userId")
    tag: Optional[str] = None
    callback_url: Optional[str] = Field(None, alias="callbackUrl")


def _task_summary(task: ConversionTask) -> dict:
    return {
        "task_id": task.id,
        "state": task.state.value,
        "progress": task.progress,
        "filename": task.filename,
        "input_format": task.input_format,
        "output_format": task.output_format,
        "engine": task.engine,
        "attempts": task.attempts,
        "created_at": task.created_at,
    }


def _create(svc: ConversionService, request: CreateTaskRequest) -> dict:
    try:
        task = svc.create_task(request)
    except ValidationError as e:
        raise HTTPException(422, {"field": e.field, "reason": e.reason})
    except NotSupportedError as e:
        raise HTTPException(422, {"field": "outputFormat", "reason": str(e)})
    except DispatchError as e:
        # task exists and stays pending; the caller can re-dispatch it later
        raise HTTPException(503, {"message": str(e), "task_id": e.task.id if e.task else None})
    return {"task_id": task.id, "state": task.state.value, "engine": task.engine}


def _get_or_404(svc: ConversionService, task_id: str) -> ConversionTask:
    try:
        return svc.get_task(task_id)
    except NotFoundError:
        raise HTTPException(404, "Task not found")


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/engines")
def get_engines():
    """Registered engines with their capability windows and current availability."""
    svc = get_conversion_service()
    executors = svc.dispatcher.executors
    engines = []
    for caps in svc.registry.engines():
        entry = caps.to_dict()
        executor = executors.get(caps.engine_id)
        entry["available"] = executor.is_available() if executor is not None else False
        engines.append(entry)
    return {"engines": engines}


@router.get("/limits")
def get_limits():
    """Per-engine upload limits for the client."""
    svc = get_conversion_service()
    return {
        caps.engine_id: {
            "max_file_size_bytes": caps.max_file_size,
            "max_file_size_mb": caps.max_file_size // (1024 * 1024),
            "timeout_seconds": caps.timeout,
        }
        for caps in svc.registry.engines()
    }


@router.post("/tasks", status_code=201)
def create_task(body: CreateTaskBody):
    """Create a task for a remote file (inputMethod=url)."""
    if body.input_method != InputMethod.URL.value:
        raise HTTPException(422, {"field": "inputMethod", "reason": "use /api/tasks/upload for file uploads"})
    svc = get_conversion_service()
    return _create(svc, CreateTaskRequest(
        input_method=InputMethod.URL,
        input_location=body.input_url,
        filename=body.filename or "",
        input_format=body.input_format,
        output_format=body.output_format,
        conversion_options=body.conversion_options,
        user_id=body.user_id,
        tag=body.tag,
        callback_url=body.callback_url,
    ))


@router.post("/tasks/upload", status_code=201)
async def create_upload_task(
    file: UploadFile = File(...),
    output_format: str = Form(..., alias="outputFormat"),
    input_format: Optional[str] = Form(None, alias="inputFormat"),
    conversion_options: Optional[str] = Form(None, alias="conversionOptions", description="JSON object"),
    user_id: Optional[str] = Form(None, alias="userId"),
    tag: Optional[str] = Form(None),
):
    """Upload a file and create a conversion task for it."""
    options = None
    if conversion_options:
        try:
            options = json.loads(conversion_options)
        except json.JSONDecodeError:
            raise HTTPException(422, {"field": "conversionOptions", "reason": "must be a JSON object"})
    svc = get_conversion_service()
    max_bytes = max((e.max_file_size for e in svc.registry.engines()), default=0)
    max_mb = max_bytes // (1024 * 1024)

    original_name = Path(file.filename or "upload").name
    dest = svc.upload_dir / f"{uuid.uuid4()}_{original_name}"
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        total = 0
        with open(dest, "wb") as f:
            while chunk := await file.read(1024 * 1024):
                total += len(chunk)
                if total > max_bytes:
                    dest.unlink(missing_ok=True)
                    raise HTTPException(413, f"File too large (max {max_mb} MB)")
                f.write(chunk)
    except HTTPException:
        raise
    except OSError as e:
        logger.exception("Upload failed: %s", e)
        dest.unlink(missing_ok=True)
        raise HTTPException(500, "Upload failed")

    request = CreateTaskRequest(
        input_method=InputMethod.UPLOAD,
        input_location=str(dest),
        filename=original_name,
        input_format=input_format,
        output_format=output_format,
        conversion_options=options,
        user_id=user_id,
        tag=tag,
        file_size=total,
    )
    try:
        return _create(svc, request)
    except HTTPException as e:
        if e.status_code == 422:
            dest.unlink(missing_ok=True)
        raise


@router.get("/tasks")
def list_tasks(
    state: Optional[str] = Query(None, description="pending | processing | completed | failed | cancelled"),
    user_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
):
    try:
        state_filter = TaskState(state) if state else None
    except ValueError:
        raise HTTPException(422, f"Unknown state: {state}")
    svc = get_conversion_service()
    return {"tasks": [_task_summary(t) for t in svc.list_tasks(state=state_filter, user_id=user_id, limit=limit)]}


@router.get("/tasks/{task_id}")
def get_task_status(task_id: str):
    """Current state, progress, output on completion and error summary on failure."""
    svc = get_conversion_service()
    try:
        return svc.get_status(task_id)
    except NotFoundError:
        raise HTTPException(404, "Task not found")


@router.post("/tasks/{task_id}/cancel")
def cancel_task(task_id: str):
    svc = get_conversion_service()
    try:
        task = svc.cancel(task_id)
    except NotFoundError:
        raise HTTPException(404, "Task not found")
    except ConflictError as e:
        raise HTTPException(409, f"Task is already {e.actual}")
    return {"task_id": task.id, "state": task.state.value}


@router.post("/tasks/{task_id}/dispatch")
def dispatch_task(task_id: str):
    """Re-dispatch a PENDING task whose first dispatch failed."""
    svc = get_conversion_service()
    task = _get_or_404(svc, task_id)
    try:
        queued = svc.dispatch(task.id)
    except DispatchError as e:
        raise HTTPException(503, {"message": str(e), "task_id": task.id})
    return {"task_id": task.id, "queued": queued}


@router.post("/tasks/{task_id}/retry", status_code=201)
def retry_task(task_id: str):
    """Create a fresh task from a FAILED one."""
    svc = get_conversion_service()
    try:
        task = svc.retry(task_id)
    except NotFoundError:
        raise HTTPException(404, "Task not found")
    except ConflictError as e:
        raise HTTPException(409, f"Only failed tasks can be retried (task is {e.actual})")
    except DispatchError as e:
        raise HTTPException(503, {"message": str(e), "task_id": e.task.id if e.task else None})
    return {"task_id": task.id, "state": task.state.value, "retry_of": task.retry_of}


@router.get("/tasks/{task_id}/download")
def download_output(task_id: str):
    """Download the converted file of a COMPLETED task."""
    svc = get_conversion_service()
    task = _get_or_404(svc, task_id)
    if task.state != TaskState.COMPLETED:
        raise HTTPException(409, f"Task is {task.state.value}")
    path = Path(task.output_location)
    if not path.is_file() or config.OUTPUT_DIR.resolve() not in path.resolve().parents:
        raise HTTPException(404, "File not found")
    return FileResponse(path, filename=path.name)
