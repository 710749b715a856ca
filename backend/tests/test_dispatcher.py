import threading

import pytest
from sqlalchemy.exc import OperationalError

from converter.conversion.errors import DispatchError
from converter.conversion.models import TaskState


def test_dispatch_enqueues_pending_task(dispatcher, store, queue, task_spec):
    task = store.create(task_spec())
    assert dispatcher.dispatch(task) is True
    assert queue.contains(task.id)
    assert store.get(task.id).state == TaskState.PENDING


def test_dispatch_twice_queues_once(dispatcher, store, queue, task_spec):
    task = store.create(task_spec())
    assert dispatcher.dispatch(task.id) is True
    assert dispatcher.dispatch(task.id) is False
    assert queue.depth() == 1


def test_dispatch_of_non_pending_task_is_noop(dispatcher, store, queue, task_spec):
    task = store.create(task_spec())
    store.transition(task.id, TaskState.PENDING, TaskState.CANCELLED)
    assert dispatcher.dispatch(task.id) is False
    assert queue.depth() == 0


def test_unavailable_engine_leaves_task_pending(dispatcher, store, queue, local_executor, task_spec):
    local_executor.available = False
    task = store.create(task_spec())
    with pytest.raises(DispatchError) as exc:
        dispatcher.dispatch(task)
    assert exc.value.task.id == task.id
    assert store.get(task.id).state == TaskState.PENDING
    assert queue.depth() == 0

    local_executor.available = True
    assert dispatcher.dispatch(task) is True


def test_engine_without_executor_is_unavailable(dispatcher, store, executors, task_spec):
    del executors["remote"]
    task = store.create(task_spec(engine="remote"))
    with pytest.raises(DispatchError):
        dispatcher.dispatch(task)


def test_queue_unreachable_raises_dispatch_error(dispatcher, store, queue, monkeypatch, task_spec):
    task = store.create(task_spec())

    def broken(task_id, delay=0):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(queue, "enqueue", broken)
    with pytest.raises(DispatchError, match="queue unreachable"):
        dispatcher.dispatch(task)
    assert store.get(task.id).state == TaskState.PENDING


def test_concurrent_dispatch_runs_task_once(dispatcher, store, queue, local_executor, make_runner, task_spec):
    task = store.create(task_spec())
    barrier = threading.Barrier(5)
    results = []

    def go():
        barrier.wait()
        results.append(dispatcher.dispatch(task.id))

    threads = [threading.Thread(target=go) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert queue.depth() == 1

    first = make_runner(worker_id="w1")
    second = make_runner(worker_id="w2")
    assert first.run_once() is True
    assert second.run_once() is False
    assert local_executor.calls == [task.id]
    assert store.get(task.id).state == TaskState.COMPLETED
