"""
Job queue: retries with exponential backoff, parking and events
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from multichannel_auth.core.queue import COMPLETED, DELAYED, FAILED, InMemoryJobQueue, Job, RedisJobQueue


class Flaky:
    """Handler that fails a fixed number of times before succeeding"""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = []

    async def __call__(self, job: Job):
        self.calls.append(job.attempt_number)
        if len(self.calls) <= self.failures:
            raise RuntimeError(f"boom {len(self.calls)}")
        return "sent"


def test_backoff_doubles(queue):
    assert queue.backoff_delay(1) == 1.0
    assert queue.backoff_delay(2) == 2.0
    assert queue.backoff_delay(3) == 4.0


def test_job_json_round_trip():
    job = Job(id="abc", data={"phone": "+12025551234"}, attempts_made=1, failed_reason="boom")
    assert Job.from_json(job.to_json()) == job


@pytest.mark.asyncio
async def test_success_on_first_attempt(queue):
    completed = []
    queue.on("completed", lambda job, result: completed.append((job.id, result)))
    job = await queue.enqueue({"n": 1})

    assert await queue.run_once(Flaky(0)) is True

    assert completed == [(job.id, "sent")]
    assert await queue.get_job(job.id) is None
    assert job.status == COMPLETED


@pytest.mark.asyncio
async def test_retry_waits_for_backoff(queue, clock):
    handler = Flaky(2)
    retrying = []
    queue.on("retrying", lambda job, error: retrying.append(job.attempts_made))
    await queue.enqueue({"n": 1})

    assert await queue.run_once(handler) is True
    assert handler.calls == [1]
    assert (await queue.counts())[DELAYED] == 1

    # Not due yet
    assert await queue.run_once(handler) is False
    clock.advance(1.0)
    assert await queue.run_once(handler) is True
    assert handler.calls == [1, 2]

    # Second retry waits twice as long
    clock.advance(1.0)
    assert await queue.run_once(handler) is False
    clock.advance(1.0)
    assert await queue.run_once(handler) is True

    assert handler.calls == [1, 2, 3]
    assert retrying == [1, 2]
    assert await queue.counts() == {"waiting": 0, "active": 0, "delayed": 0, "failed": 0}


@pytest.mark.asyncio
async def test_exhausted_job_is_parked(queue, clock):
    failed = []

    async def on_failed(job, error):
        failed.append((job.id, str(error)))

    queue.on("failed", on_failed)
    handler = Flaky(10)
    job = await queue.enqueue({"n": 1})

    await queue.run_once(handler)
    clock.advance(1)
    await queue.run_once(handler)
    clock.advance(2)
    await queue.run_once(handler)

    assert handler.calls == [1, 2, 3]
    assert failed == [(job.id, "boom 3")]

    parked = await queue.get_failed()
    assert [j.id for j in parked] == [job.id]
    assert parked[0].status == FAILED
    assert parked[0].attempts_made == 3
    assert parked[0].failed_reason == "boom 3"

    # Nothing else runs
    clock.advance(100)
    assert await queue.run_once(handler) is False


@pytest.mark.asyncio
async def test_retry_failed_resets_attempts(queue, clock):
    handler = Flaky(3)
    job = await queue.enqueue({"n": 1}, attempts=1)
    await queue.run_once(handler)
    assert len(await queue.get_failed()) == 1

    assert await queue.retry_failed(job.id) is True
    assert await queue.retry_failed(job.id) is False

    await queue.run_once(handler)  # still failing (2nd failure overall)
    assert len(await queue.get_failed()) == 1


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_processing(queue):
    def broken_listener(job, result):
        raise ValueError("listener bug")

    queue.on("completed", broken_listener)
    await queue.enqueue({"n": 1})

    assert await queue.run_once(Flaky(0)) is True


def test_unknown_event_rejected(queue):
    with pytest.raises(ValueError):
        queue.on("stalled", lambda job, payload: None)


@pytest.mark.asyncio
async def test_worker_pool_processes_jobs(queue):
    done = asyncio.Event()
    seen = []

    async def handler(job):
        seen.append(job.data["n"])
        if len(seen) == 3:
            done.set()

    for n in range(3):
        await queue.enqueue({"n": n})

    queue.process(handler, concurrency=2)
    try:
        await asyncio.wait_for(done.wait(), timeout=2)
    finally:
        await queue.close()

    assert sorted(seen) == [0, 1, 2]
    assert queue.running is False


class CompleteFailsOnce(InMemoryJobQueue):
    """Queue whose first completion write raises, like a dropped Redis connection"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.complete_failures = 1

    async def _complete(self, job: Job) -> None:
        if self.complete_failures:
            self.complete_failures -= 1
            raise ConnectionError("connection reset")
        await super()._complete(job)


@pytest.mark.asyncio
async def test_worker_survives_storage_error():
    queue = CompleteFailsOnce("sms", poll_interval=0.01)
    done = asyncio.Event()
    seen = []

    async def handler(job):
        seen.append(job.data["n"])
        if len(seen) == 2:
            done.set()

    await queue.enqueue({"n": 1})
    await queue.enqueue({"n": 2})

    queue.process(handler, concurrency=1)
    try:
        await asyncio.wait_for(done.wait(), timeout=2)
        assert all(not task.done() for task in queue._workers)
    finally:
        await queue.close()

    assert seen == [1, 2]


@pytest.mark.asyncio
async def test_process_twice_is_an_error(queue):
    queue.process(Flaky(0))
    try:
        with pytest.raises(RuntimeError):
            queue.process(Flaky(0))
    finally:
        await queue.close()


class TestRedisJobQueue:
    """Storage commands issued against a mocked redis client"""

    def _queue(self):
        client = MagicMock()
        client.register_script.return_value = AsyncMock(return_value=0)
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[True, 1])
        client.pipeline.return_value.__aenter__ = AsyncMock(return_value=pipe)
        client.pipeline.return_value.__aexit__ = AsyncMock(return_value=False)
        return RedisJobQueue(client, "sms"), client, pipe

    @pytest.mark.asyncio
    async def test_enqueue_writes_record_and_waiting_list(self):
        queue, client, pipe = self._queue()

        job = await queue.enqueue({"phone": "+12025551234"})

        pipe.set.assert_called_once()
        key, raw = pipe.set.call_args[0]
        assert key == f"queue:sms:job:{job.id}"
        assert json.loads(raw)["data"] == {"phone": "+12025551234"}
        pipe.lpush.assert_called_once_with("queue:sms:waiting", job.id)

    @pytest.mark.asyncio
    async def test_reserve_promotes_then_moves_to_active(self):
        queue, client, pipe = self._queue()
        stored = Job(id="j1", data={"n": 1})
        client.lmove = AsyncMock(return_value="j1")
        client.get = AsyncMock(return_value=stored.to_json())

        job = await queue._reserve()

        queue._promote_script.assert_awaited_once()
        client.lmove.assert_awaited_once_with("queue:sms:waiting", "queue:sms:active", "RIGHT", "LEFT")
        assert job.id == "j1"

    @pytest.mark.asyncio
    async def test_requeue_active(self):
        queue, client, pipe = self._queue()
        client.lmove = AsyncMock(side_effect=["j1", "j2", None])

        assert await queue.requeue_active() == 2
