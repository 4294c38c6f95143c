"""
Task Dispatch
UI-affinity task queue and background execution for vendor calls
"""

import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional


class UIDispatcher:
    """
    Task queue bound to one designated (UI) thread.

    ``call`` runs the task inline when the caller is already on the
    designated thread and enqueues it otherwise, never both. ``post``
    always enqueues. The host drains the queue from its event loop with
    ``run_pending`` (or ``run_until`` in blocking contexts).
    """

    def __init__(self, app_logger, thread: Optional[threading.Thread] = None):
        self.logger = app_logger
        self._thread_ident = (thread or threading.current_thread()).ident
        self._queue: "queue.Queue[tuple]" = queue.Queue()

    def is_designated_thread(self) -> bool:
        return threading.get_ident() == self._thread_ident

    def call(self, fn: Callable, *args, **kwargs) -> bool:
        """Run now if on the designated thread, else enqueue. Returns True when run inline."""
        if self.is_designated_thread():
            self._run(fn, args, kwargs)
            return True
        self._queue.put((fn, args, kwargs))
        return False

    def post(self, fn: Callable, *args, **kwargs) -> None:
        self._queue.put((fn, args, kwargs))

    def pending(self) -> int:
        return self._queue.qsize()

    def run_pending(self) -> int:
        """Execute every queued task; must be called on the designated thread"""
        self._require_designated_thread()
        executed = 0
        while True:
            try:
                fn, args, kwargs = self._queue.get_nowait()
            except queue.Empty:
                return executed
            self._run(fn, args, kwargs)
            executed += 1

    def run_until(self, predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
        """Process tasks as they arrive until predicate() holds or the timeout elapses"""
        self._require_designated_thread()
        deadline = time.monotonic() + timeout
        while not predicate():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            try:
                fn, args, kwargs = self._queue.get(timeout=min(remaining, 0.05))
            except queue.Empty:
                continue
            self._run(fn, args, kwargs)
        return True

    def _require_designated_thread(self) -> None:
        if not self.is_designated_thread():
            raise RuntimeError("UI dispatcher drained off its designated thread")

    def _run(self, fn, args, kwargs) -> None:
        try:
            fn(*args, **kwargs)
        except Exception:
            self.logger.exception(f"Unhandled error in UI task {getattr(fn, '__name__', fn)!r}")


class BackgroundRunner:
    """Runs blocking vendor calls off the UI thread and hands results back to it"""

    def __init__(self, dispatcher: UIDispatcher, max_workers: int = 4):
        self.dispatcher = dispatcher
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix='licensing-worker')

    def submit(self, fn: Callable, on_done: Callable[[Future], None], *args, **kwargs) -> Future:
        """Run fn(*args) in the pool; on_done(future) is posted to the UI thread"""
        future = self._executor.submit(fn, *args, **kwargs)

        def rendezvous(done: Future):
            if done.cancelled():
                return
            self.dispatcher.post(on_done, done)

        future.add_done_callback(rendezvous)
        return future

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)


class OnceCallback:
    """Wraps a completion callback so it fires at most once"""

    def __init__(self, app_logger, callback: Optional[Callable], label: str):
        self.logger = app_logger
        self._callback = callback
        self._label = label
        self._fired = False
        self._lock = threading.Lock()

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def present(self) -> bool:
        return self._callback is not None

    def __call__(self, *args) -> bool:
        with self._lock:
            if self._fired:
                self.logger.warning(f"Ignoring duplicate completion for {self._label}")
                return False
            self._fired = True
        if self._callback is not None:
            self._callback(*args)
        return True
