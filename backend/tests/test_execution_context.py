import pytest

from converter.conversion.errors import TIMEOUT, ExecutionCancelled, ExecutionError
from converter.executors.base import ExecutionContext, Executor


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_deadline_and_remaining(tmp_path):
    clock = Clock()
    ctx = ExecutionContext("t1", timeout=10, work_dir=tmp_path, clock=clock)
    assert ctx.remaining() == 10
    clock.now += 4
    assert ctx.remaining() == 6
    assert not ctx.expired()
    clock.now += 6
    assert ctx.expired()
    assert ctx.remaining() == 0


def test_checkpoint_raises_retryable_timeout(tmp_path):
    clock = Clock()
    ctx = ExecutionContext("t1", timeout=1, work_dir=tmp_path, clock=clock)
    ctx.checkpoint()
    clock.now += 2
    with pytest.raises(ExecutionError) as exc:
        ctx.checkpoint()
    assert exc.value.classification == TIMEOUT
    assert exc.value.retryable is True


def test_cancel_check_is_throttled(tmp_path):
    clock = Clock()
    calls = []

    def check():
        calls.append(clock.now)
        return False

    ctx = ExecutionContext("t1", timeout=60, work_dir=tmp_path, cancel_check=check, cancel_poll_interval=1, clock=clock)
    assert ctx.cancelled() is False
    assert ctx.cancelled() is False
    assert len(calls) == 1
    clock.now += 1
    ctx.cancelled()
    assert len(calls) == 2
    ctx.checkpoint()
    assert len(calls) == 3


def test_cancellation_sticks(tmp_path):
    answers = iter([True])
    ctx = ExecutionContext("t1", timeout=60, work_dir=tmp_path, cancel_check=lambda: next(answers))
    with pytest.raises(ExecutionCancelled):
        ctx.checkpoint()
    assert ctx.cancelled() is True


def test_progress_sink(tmp_path):
    seen = []
    ctx = ExecutionContext("t1", timeout=60, work_dir=tmp_path, progress=seen.append)
    ctx.report_progress(30)
    assert seen == [30]


class FlakyProbe(Executor):
    engine_id = "flaky"

    def __init__(self, results):
        super().__init__(availability_ttl=3600)
        self.results = list(results)
        self.probes = 0

    def probe(self):
        self.probes += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def test_availability_is_cached():
    executor = FlakyProbe([True, False])
    assert executor.is_available() is True
    assert executor.is_available() is True
    assert executor.probes == 1


def test_probe_exception_means_unavailable():
    executor = FlakyProbe([OSError("no such binary")])
    assert executor.is_available() is False
