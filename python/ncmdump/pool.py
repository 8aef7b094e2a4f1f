"""Pool of reusable decoder processes.

Each pooled worker is a ``spawn`` process that keeps one ``NcmDump`` alive and
answers ``(task_id, DecodeTask)`` requests with ``(task_id, DecodeResult)``
replies. The pool itself is driven from a single asyncio event loop: worker
states and the wait queue are only ever touched from that loop, so no locks
are needed while the decoding runs in parallel in the child processes.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import multiprocessing
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Set

from .engine import NcmDump
from .errors import ErrorKind, PoolDisposedError, WorkerExitedError
from .models import DecodeResult, DecodeTask
from .settings import clamp_thread_count, default_thread_count

logger = logging.getLogger(__name__)

_MP_CONTEXT = multiprocessing.get_context("spawn")


def _worker_main(requests, responses) -> None:
    ncm = NcmDump()
    while True:
        try:
            message = requests.recv()
        except EOFError:
            break
        if message is None:
            break
        task_id, task = message
        try:
            result = ncm.run_task(task)
        except Exception as exc:
            result = DecodeResult.failure(task.input_path, str(exc), ErrorKind.TASK_FAILURE)
        responses.send((task_id, result))
    responses.close()


class WorkerState(enum.Enum):
    IDLE = "idle"
    BUSY = "busy"


class PooledWorker:
    def __init__(self, process, requests, responses):
        self._process = process
        self._requests = requests
        self._responses = responses
        self._task_ids = itertools.count()
        self._pending: Dict[int, asyncio.Future] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._listener: Optional[threading.Thread] = None
        self._closing = False
        self.alive = True

    @classmethod
    def spawn(cls) -> "PooledWorker":
        request_reader, request_writer = _MP_CONTEXT.Pipe(duplex=False)
        response_reader, response_writer = _MP_CONTEXT.Pipe(duplex=False)
        process = _MP_CONTEXT.Process(
            target=_worker_main,
            args=(request_reader, response_writer),
            name="ncmdump-worker",
            daemon=True,
        )
        process.start()
        request_reader.close()
        response_writer.close()
        logger.debug("Spawned decoder process %s", process.pid)
        return cls(process, request_writer, response_reader)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    async def run_decode(self, task: DecodeTask) -> DecodeResult:
        if not self.alive:
            raise WorkerExitedError(f"Decoder process {self.pid} is no longer running")
        loop = asyncio.get_running_loop()
        self._start_listener(loop)

        task_id = next(self._task_ids)
        future = loop.create_future()
        self._pending[task_id] = future
        try:
            self._requests.send((task_id, task))
        except (OSError, ValueError) as exc:
            del self._pending[task_id]
            self.alive = False
            raise WorkerExitedError(f"Decoder process {self.pid} did not accept a task: {exc}") from exc
        return await future

    async def close(self) -> None:
        self._closing = True
        self.alive = False
        self._fail_pending(PoolDisposedError())
        await asyncio.to_thread(self._stop)

    def _start_listener(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._listener is not None:
            return
        self._loop = loop
        self._listener = threading.Thread(target=self._listen, name=f"ncmdump-listener-{self.pid}", daemon=True)
        self._listener.start()

    def _listen(self) -> None:
        while True:
            try:
                task_id, result = self._responses.recv()
            except (EOFError, OSError):
                break
            if not self._call_in_loop(self._resolve, task_id, result):
                break
        self._responses.close()
        self._call_in_loop(self._on_exit)

    def _call_in_loop(self, callback: Callable[..., None], *args: Any) -> bool:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            # event loop already closed
            return False
        return True

    def _resolve(self, task_id: int, result: DecodeResult) -> None:
        future = self._pending.pop(task_id, None)
        if future is not None and not future.done():
            future.set_result(result)

    def _on_exit(self) -> None:
        self.alive = False
        if self._closing:
            self._fail_pending(PoolDisposedError())
        else:
            logger.warning("Decoder process %s exited unexpectedly", self.pid)
            self._fail_pending(WorkerExitedError(f"Decoder process {self.pid} exited"))

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    def _stop(self, timeout: float = 5.0) -> None:
        try:
            self._requests.send(None)
        except (OSError, ValueError):
            logger.debug("Decoder process %s already stopped reading", self.pid)
        self._process.join(timeout)
        if self._process.is_alive():
            self._process.terminate()
            self._process.join()
        self._requests.close()
        if self._listener is None:
            self._responses.close()


class WorkerPool:
    """Bounded set of reusable decoder workers with FIFO hand-over.

    ``worker_factory`` builds one worker in a helper thread; the result must
    offer ``async run_decode(task)`` and ``async close()``.
    """

    def __init__(self, max_size: Optional[int] = None, worker_factory: Optional[Callable[[], Any]] = None):
        self._max_size = clamp_thread_count(max_size if max_size is not None else default_thread_count())
        self._factory = worker_factory or PooledWorker.spawn
        self._states: Dict[Any, WorkerState] = {}
        self._waiters: Deque[asyncio.Future] = deque()
        self._provisioning = 0
        self._background: Set[asyncio.Task] = set()
        self._disposed = False

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def size(self) -> int:
        return len(self._states)

    @property
    def available_count(self) -> int:
        return sum(1 for state in self._states.values() if state is WorkerState.IDLE)

    @property
    def busy_count(self) -> int:
        return sum(1 for state in self._states.values() if state is WorkerState.BUSY)

    @property
    def waiting_count(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    async def warm_up(self, count: Optional[int] = None) -> None:
        if self._disposed:
            return
        target = max(1, min(count if count is not None else self._max_size, self._max_size))
        missing = target - len(self._states) - self._provisioning
        if missing <= 0:
            return
        logger.info("Warming up %d decoder worker(s)", missing)
        outcomes = await asyncio.gather(*(self._provision() for _ in range(missing)), return_exceptions=True)
        errors = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        for outcome in outcomes:
            if not isinstance(outcome, BaseException):
                self._make_available(outcome)
        if errors:
            self._refill()
            raise errors[0]
        logger.info("Worker pool ready with %d worker(s)", len(self._states))

    async def acquire(self):
        if self._disposed:
            raise PoolDisposedError()

        for worker, state in self._states.items():
            if state is WorkerState.IDLE:
                self._states[worker] = WorkerState.BUSY
                return worker

        if len(self._states) + self._provisioning < self._max_size:
            try:
                worker = await self._provision()
            except Exception:
                self._refill()
                raise
            self._states[worker] = WorkerState.BUSY
            return worker

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                self.release(waiter.result())
            raise

    def release(self, worker) -> None:
        if self._disposed or worker not in self._states:
            return
        if not getattr(worker, "alive", True):
            del self._states[worker]
            self._refill()
            return
        if not self._hand_over(worker):
            self._states[worker] = WorkerState.IDLE

    async def run_decode(self, task: DecodeTask) -> DecodeResult:
        worker = await self.acquire()
        try:
            return await worker.run_decode(task)
        finally:
            self.release(worker)

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        logger.info("Disposing worker pool with %d worker(s)", len(self._states))

        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(PoolDisposedError())

        workers = list(self._states)
        self._states.clear()
        await asyncio.gather(*(worker.close() for worker in workers))

    async def _provision(self, reserved: bool = False):
        if not reserved:
            self._provisioning += 1
        try:
            worker = await asyncio.to_thread(self._factory)
        finally:
            self._provisioning -= 1
        if self._disposed:
            await worker.close()
            raise PoolDisposedError()
        return worker

    def _refill(self) -> None:
        """Start one replacement per waiter that free capacity can serve."""
        if self._disposed:
            return
        while self.waiting_count > self._provisioning and len(self._states) + self._provisioning < self._max_size:
            self._provisioning += 1
            task = asyncio.ensure_future(self._replace_worker())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _replace_worker(self) -> None:
        try:
            worker = await self._provision(reserved=True)
        except PoolDisposedError:
            return
        except Exception as exc:
            logger.error("Could not replace a decoder worker: %s", exc)
            while self._waiters:
                waiter = self._waiters.popleft()
                if not waiter.done():
                    waiter.set_exception(exc)
                    break
            self._refill()
            return
        self._make_available(worker)

    def _make_available(self, worker) -> None:
        self._states[worker] = WorkerState.BUSY
        if not self._hand_over(worker):
            self._states[worker] = WorkerState.IDLE

    def _hand_over(self, worker) -> bool:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(worker)
                return True
        return False
