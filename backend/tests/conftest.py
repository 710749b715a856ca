"""Shared fixtures: a throwaway SQLite database per test and fake engines."""
import pytest

from converter.conversion.dispatcher import ConversionDispatcher
from converter.conversion.models import ConversionOptions, EngineKind, InputMethod, TaskSpec
from converter.conversion.queue import SqlTaskQueue
from converter.conversion.registry import EngineCapabilities, EngineRegistry
from converter.conversion.runner import JobRunner
from converter.conversion.service import ConversionService
from converter.conversion.store import TaskStore
from converter.db import ensure_tables, make_engine
from converter.executors.base import ExecutionResult, Executor

MB = 1024 * 1024


def make_caps(engine_id="local", **overrides) -> EngineCapabilities:
    values = dict(
        engine_id=engine_id,
        kind=EngineKind.LOCAL,
        priority=10,
        input_formats=frozenset({"mov", "mp4", "mkv", "wav"}),
        output_formats=frozenset({"mp4", "webm", "mp3"}),
        max_file_size=10 * MB,
        allowed_qualities=("high", "medium", "low"),
        allowed_resolutions=("original", "1080p", "720p"),
        allowed_framerates=("original", "30", "10"),
        defaults={"videoQuality": "medium", "resolution": "original", "framerate": "original"},
        timeout=60,
    )
    values.update(overrides)
    return EngineCapabilities(**values)


class FakeExecutor(Executor):
    """Executor whose outcomes are scripted: each entry is an exception to raise, a callable
    `(task, caps, ctx) -> ExecutionResult`, or None for a default success."""

    def __init__(self, engine_id="local", outcomes=None, available=True):
        super().__init__(availability_ttl=0)
        self.engine_id = engine_id
        self.outcomes = list(outcomes or [])
        self.available = available
        self.calls = []

    def probe(self):
        return self.available

    def execute(self, task, capabilities, ctx):
        self.calls.append(task.id)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(task, capabilities, ctx)
        ctx.work_dir.mkdir(parents=True, exist_ok=True)
        out = ctx.work_dir / f"{task.id}.{task.output_format}"
        out.write_bytes(b"converted")
        return ExecutionResult(output_location=str(out), output_size=out.stat().st_size, duration_seconds=1.5)


@pytest.fixture
def db_engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'tasks.db'}")
    ensure_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return TaskStore(db_engine)


@pytest.fixture
def queue(db_engine):
    return SqlTaskQueue(db_engine, lease_seconds=60)


@pytest.fixture
def registry():
    remote = make_caps(
        "remote",
        kind=EngineKind.REMOTE,
        priority=20,
        input_formats=frozenset({"mov", "mp4", "mkv", "wav", "docx"}),
        output_formats=frozenset({"mp4", "webm", "mp3", "pdf"}),
        max_file_size=100 * MB,
    )
    return EngineRegistry([make_caps("local"), remote])


@pytest.fixture
def local_executor():
    return FakeExecutor("local")


@pytest.fixture
def remote_executor():
    return FakeExecutor("remote")


@pytest.fixture
def executors(local_executor, remote_executor):
    return {"local": local_executor, "remote": remote_executor}


@pytest.fixture
def dispatcher(store, queue, registry, executors):
    return ConversionDispatcher(store, queue, registry, executors)


@pytest.fixture
def service(store, registry, dispatcher, tmp_path):
    return ConversionService(store, registry, dispatcher, upload_dir=tmp_path / "uploads")


@pytest.fixture
def make_runner(store, queue, registry, executors, tmp_path):
    def factory(**kwargs):
        kwargs.setdefault("backoff_base", 0)
        kwargs.setdefault("backoff_max", 0)
        kwargs.setdefault("worker_id", "worker-1")
        kwargs.setdefault("work_dir", tmp_path / "work")
        return JobRunner(store, queue, registry, executors, **kwargs)
    return factory


@pytest.fixture
def task_spec():
    def factory(**overrides):
        values = dict(
            input_method=InputMethod.URL,
            input_location="https://example.com/video.mov",
            filename="video.mov",
            input_format="mov",
            output_format="mp4",
            options=ConversionOptions(video_quality="medium", resolution="original", framerate="10"),
            engine="local",
        )
        values.update(overrides)
        return TaskSpec(**values)
    return factory


@pytest.fixture
def build_task():
    """In-memory ConversionTask for executor tests that do not need the database."""
    from converter.conversion.models import ConversionTask, TaskState

    def factory(**overrides):
        values = dict(
            id="0123456789abcdef",
            input_method=InputMethod.URL,
            input_location="https://files.example.com/clip.mov",
            filename="clip.mov",
            input_format="mov",
            output_format="mp4",
            options=ConversionOptions("medium", "original", "original"),
            engine="ffmpeg",
            state=TaskState.PROCESSING,
            created_at="2026-01-01T00:00:00+00:00",
            updated_at="2026-01-01T00:00:00+00:00",
            attempts=1,
            version=1,
        )
        values.update(overrides)
        return ConversionTask(**values)
    return factory
