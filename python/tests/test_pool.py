import asyncio
import threading
import time
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from ncmdump.errors import PoolDisposedError
from ncmdump.models import DecodeResult, DecodeTask
from ncmdump.pool import WorkerPool
from ncm_samples import audio_bytes, write_ncm


class FakeWorker:
    def __init__(self, number: int) -> None:
        self.number = number
        self.alive = True
        self.closed = False
        self.tasks = []

    async def run_decode(self, task: DecodeTask) -> DecodeResult:
        self.tasks.append(task)
        await asyncio.sleep(0)
        return DecodeResult.ok(task.input_path, f"out-{self.number}")

    async def close(self) -> None:
        self.closed = True


class FakeFactory:
    def __init__(self) -> None:
        self.created = []

    def __call__(self) -> FakeWorker:
        worker = FakeWorker(len(self.created))
        self.created.append(worker)
        return worker


class FlakyFactory:
    """Builds fake workers but raises OSError on the listed call numbers."""

    def __init__(self, fail_on, delay: float = 0.0) -> None:
        self.fail_on = set(fail_on)
        self.delay = delay
        self.calls = 0
        self.created = []
        self._lock = threading.Lock()

    def __call__(self) -> FakeWorker:
        with self._lock:
            call = self.calls
            self.calls += 1
        time.sleep(self.delay)
        if call in self.fail_on:
            raise OSError(f"spawn {call} failed")
        worker = FakeWorker(call)
        self.created.append(worker)
        return worker


async def _until(condition, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class WorkerPoolTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.factory = FakeFactory()

    async def test_never_provisions_more_than_max_size(self) -> None:
        pool = WorkerPool(max_size=2, worker_factory=self.factory)
        first, second = await asyncio.gather(pool.acquire(), pool.acquire())
        third = asyncio.ensure_future(pool.acquire())
        await _until(lambda: pool.waiting_count == 1)

        self.assertEqual(len(self.factory.created), 2)
        self.assertEqual(pool.size, 2)
        self.assertEqual(pool.busy_count, 2)
        self.assertFalse(third.done())

        pool.release(first)
        self.assertIs(await third, first)
        self.assertEqual(len(self.factory.created), 2)
        pool.release(second)
        self.assertEqual(pool.available_count, 1)
        await pool.dispose()

    async def test_waiters_are_served_in_fifo_order(self) -> None:
        pool = WorkerPool(max_size=1, worker_factory=self.factory)
        worker = await pool.acquire()

        oldest = asyncio.ensure_future(pool.acquire())
        await _until(lambda: pool.waiting_count == 1)
        newest = asyncio.ensure_future(pool.acquire())
        await _until(lambda: pool.waiting_count == 2)

        pool.release(worker)
        self.assertIs(await oldest, worker)
        self.assertFalse(newest.done())
        self.assertEqual(pool.busy_count, 1)

        pool.release(worker)
        self.assertIs(await newest, worker)
        pool.release(worker)
        self.assertEqual(pool.available_count, 1)
        await pool.dispose()

    async def test_cancelled_waiter_is_skipped(self) -> None:
        pool = WorkerPool(max_size=1, worker_factory=self.factory)
        worker = await pool.acquire()
        cancelled = asyncio.ensure_future(pool.acquire())
        waiting = asyncio.ensure_future(pool.acquire())
        await _until(lambda: pool.waiting_count == 2)

        cancelled.cancel()
        await asyncio.sleep(0)
        pool.release(worker)
        self.assertIs(await waiting, worker)
        await pool.dispose()

    async def test_dispose_fails_waiters_and_later_acquires(self) -> None:
        pool = WorkerPool(max_size=1, worker_factory=self.factory)
        await pool.acquire()
        waiter = asyncio.ensure_future(pool.acquire())
        await _until(lambda: pool.waiting_count == 1)

        await pool.dispose()
        with self.assertRaises(PoolDisposedError):
            await waiter
        with self.assertRaises(PoolDisposedError):
            await pool.acquire()
        self.assertTrue(pool.is_disposed)
        self.assertTrue(all(w.closed for w in self.factory.created))
        self.assertEqual(pool.size, 0)
        await pool.dispose()

    async def test_warm_up_is_capped(self) -> None:
        pool = WorkerPool(max_size=3, worker_factory=self.factory)
        await pool.warm_up(5)
        self.assertEqual(len(self.factory.created), 3)
        self.assertEqual(pool.available_count, 3)

        await pool.warm_up()
        self.assertEqual(len(self.factory.created), 3)

        worker = await pool.acquire()
        self.assertIn(worker, self.factory.created)
        self.assertEqual(len(self.factory.created), 3)
        await pool.dispose()

    async def test_warm_up_after_dispose_does_nothing(self) -> None:
        pool = WorkerPool(max_size=2, worker_factory=self.factory)
        await pool.dispose()
        await pool.warm_up(2)
        self.assertEqual(self.factory.created, [])

    async def test_run_decode_releases_worker(self) -> None:
        pool = WorkerPool(max_size=2, worker_factory=self.factory)
        tasks = [DecodeTask(f"in-{i}.ncm", "out") for i in range(6)]
        results = await asyncio.gather(*(pool.run_decode(task) for task in tasks))

        self.assertEqual([r.input_path for r in results], [t.input_path for t in tasks])
        self.assertLessEqual(len(self.factory.created), 2)
        self.assertEqual(pool.busy_count, 0)
        self.assertEqual(sum(len(w.tasks) for w in self.factory.created), 6)
        await pool.dispose()

    async def test_dead_worker_is_replaced_for_waiter(self) -> None:
        pool = WorkerPool(max_size=1, worker_factory=self.factory)
        worker = await pool.acquire()
        waiter = asyncio.ensure_future(pool.acquire())
        await _until(lambda: pool.waiting_count == 1)

        worker.alive = False
        pool.release(worker)
        replacement = await waiter
        self.assertIsNot(replacement, worker)
        self.assertEqual(pool.size, 1)
        await pool.dispose()

    async def test_waiter_is_served_after_failed_spawn(self) -> None:
        factory = FlakyFactory(fail_on={0}, delay=0.05)
        pool = WorkerPool(max_size=1, worker_factory=factory)
        first = asyncio.ensure_future(pool.acquire())
        await _until(lambda: factory.calls == 1)
        second = asyncio.ensure_future(pool.acquire())
        await _until(lambda: pool.waiting_count == 1)

        with self.assertRaises(OSError):
            await first
        worker = await asyncio.wait_for(second, timeout=5)
        self.assertIs(worker, factory.created[0])
        self.assertEqual(pool.size, 1)
        await pool.dispose()

    async def test_failed_warm_up_keeps_built_workers(self) -> None:
        factory = FlakyFactory(fail_on={1})
        pool = WorkerPool(max_size=3, worker_factory=factory)
        with self.assertRaises(OSError):
            await pool.warm_up(3)

        self.assertEqual(len(factory.created), 2)
        self.assertEqual(pool.available_count, 2)
        await pool.dispose()
        self.assertTrue(all(w.closed for w in factory.created))

    async def test_replacement_task_is_tracked_until_done(self) -> None:
        pool = WorkerPool(max_size=1, worker_factory=self.factory)
        worker = await pool.acquire()
        waiter = asyncio.ensure_future(pool.acquire())
        await _until(lambda: pool.waiting_count == 1)

        worker.alive = False
        pool.release(worker)
        self.assertEqual(len(pool._background), 1)
        await asyncio.wait_for(waiter, timeout=5)
        await _until(lambda: not pool._background)
        await pool.dispose()

    def test_max_size_is_clamped(self) -> None:
        self.assertEqual(WorkerPool(max_size=100, worker_factory=self.factory).max_size, 32)
        self.assertEqual(WorkerPool(max_size=0, worker_factory=self.factory).max_size, 1)
        self.assertGreaterEqual(WorkerPool(worker_factory=self.factory).max_size, 1)


class ProcessWorkerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmpdir = TemporaryDirectory()
        self.tmp_path = Path(self.tmpdir.name)

    async def asyncTearDown(self) -> None:
        self.tmpdir.cleanup()

    async def test_decodes_in_child_process(self) -> None:
        audio = audio_bytes(70_000)
        sources = [write_ncm(self.tmp_path / f"Song{i}.ncm", audio) for i in range(3)]
        pool = WorkerPool(max_size=2)
        try:
            await pool.warm_up(2)
            self.assertEqual(pool.size, 2)
            results = await asyncio.gather(
                *(pool.run_decode(DecodeTask(str(src), str(self.tmp_path), use_streaming=i % 2 == 0))
                  for i, src in enumerate(sources))
            )
        finally:
            await pool.dispose()

        for src, result in zip(sources, results):
            self.assertTrue(result.success, result.error_message)
            self.assertEqual(result.input_path, str(src))
            self.assertEqual(Path(result.output_path).read_bytes(), audio)

    async def test_failure_comes_back_as_result(self) -> None:
        pool = WorkerPool(max_size=1)
        try:
            result = await pool.run_decode(DecodeTask(str(self.tmp_path / "gone.ncm"), str(self.tmp_path)))
        finally:
            await pool.dispose()
        self.assertFalse(result.success)
        self.assertIn("gone.ncm", result.error_message)


if __name__ == "__main__":
    unittest.main()
