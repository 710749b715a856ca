import httpx
import pytest

from converter.conversion.errors import FILE_TOO_LARGE, INVALID_INPUT, NETWORK_ERROR, ExecutionError
from converter.conversion.models import InputMethod
from converter.executors.base import ExecutionContext
from converter.executors.fetch import fetch_input


@pytest.fixture
def ctx(tmp_path):
    return ExecutionContext("t1", timeout=60, work_dir=tmp_path / "work")


def client_for(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_upload_returns_existing_path(tmp_path, ctx, build_task):
    src = tmp_path / "clip.mov"
    src.write_bytes(b"x" * 10)
    task = build_task(input_method=InputMethod.UPLOAD, input_location=str(src))
    assert fetch_input(task, ctx, max_bytes=100) == src


def test_missing_upload_is_invalid_input(tmp_path, ctx, build_task):
    task = build_task(input_method=InputMethod.UPLOAD, input_location=str(tmp_path / "gone.mov"))
    with pytest.raises(ExecutionError) as exc:
        fetch_input(task, ctx, max_bytes=100)
    assert exc.value.classification == INVALID_INPUT
    assert exc.value.retryable is False


def test_oversized_upload_rejected_before_conversion(tmp_path, ctx, build_task):
    src = tmp_path / "clip.mov"
    src.write_bytes(b"x" * 101)
    task = build_task(input_method=InputMethod.UPLOAD, input_location=str(src))
    with pytest.raises(ExecutionError) as exc:
        fetch_input(task, ctx, max_bytes=100)
    assert exc.value.classification == FILE_TOO_LARGE
    assert exc.value.retryable is False


def test_url_download(ctx, build_task):
    client = client_for(lambda request: httpx.Response(200, content=b"movie-bytes"))
    path = fetch_input(build_task(), ctx, max_bytes=1000, client=client)
    assert path.read_bytes() == b"movie-bytes"
    assert path.parent == ctx.work_dir


def test_url_not_found_is_not_retried(ctx, build_task):
    client = client_for(lambda request: httpx.Response(404))
    with pytest.raises(ExecutionError) as exc:
        fetch_input(build_task(), ctx, max_bytes=1000, client=client)
    assert exc.value.classification == INVALID_INPUT
    assert exc.value.retryable is False


def test_url_server_error_is_retryable(ctx, build_task):
    client = client_for(lambda request: httpx.Response(503))
    with pytest.raises(ExecutionError) as exc:
        fetch_input(build_task(), ctx, max_bytes=1000, client=client)
    assert exc.value.classification == NETWORK_ERROR
    assert exc.value.retryable is True


def test_streamed_size_limit_removes_partial_file(ctx, build_task):
    def handler(request):
        # chunked, no content-length up front
        return httpx.Response(200, content=iter([b"x" * 60, b"x" * 60]))

    task = build_task()
    with pytest.raises(ExecutionError) as exc:
        fetch_input(task, ctx, max_bytes=100, client=client_for(handler))
    assert exc.value.classification == FILE_TOO_LARGE
    assert list(ctx.work_dir.iterdir()) == []


def test_declared_size_over_limit(ctx, build_task):
    client = client_for(lambda request: httpx.Response(200, content=b"x" * 500))
    with pytest.raises(ExecutionError) as exc:
        fetch_input(build_task(), ctx, max_bytes=100, client=client)
    assert exc.value.classification == FILE_TOO_LARGE


def test_connection_error_is_network_error(ctx, build_task):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ExecutionError) as exc:
        fetch_input(build_task(), ctx, max_bytes=100, client=client_for(handler))
    assert exc.value.classification == NETWORK_ERROR
