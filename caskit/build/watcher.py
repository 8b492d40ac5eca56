"""File watching and shutdown coordination for watch mode.

Each watch loop is a :class:`FileWatcher` thread that polls modification
times under a set of paths. Loops register their close callbacks with a
:class:`ShutdownScope`; closing the scope (explicitly, or from a signal
handler installed with :meth:`ShutdownScope.install_signal_handlers`) stops
every loop.
"""

from __future__ import annotations

import pathlib
import signal
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from caskit.build.result import BuildResult, Diagnostic
from caskit.core.logging_manager import get_logger

logger = get_logger(__name__)

IGNORED_DIRECTORIES = {"node_modules", ".git", ".caskit", "coverage"}

Snapshot = Dict[pathlib.Path, Tuple[float, int]]


class WatchHandle(Protocol):
    """Something that can be closed to stop a watch loop."""

    def close(self) -> None:
        ...


class NullWatchHandle:
    """Handle for a watch loop that never started."""

    def close(self) -> None:
        return None


def snapshot_paths(paths: Iterable[pathlib.Path], ignored: Set[str] = IGNORED_DIRECTORIES) -> Snapshot:
    """Record ``(mtime, size)`` of every file under ``paths``."""
    snapshot: Snapshot = {}
    for path in paths:
        if path.is_file():
            stat = path.stat()
            snapshot[path] = (stat.st_mtime, stat.st_size)
            continue
        if not path.is_dir():
            continue
        for file_path in path.rglob("*"):
            if any(part in ignored for part in file_path.relative_to(path).parts):
                continue
            try:
                if file_path.is_file():
                    stat = file_path.stat()
                    snapshot[file_path] = (stat.st_mtime, stat.st_size)
            except FileNotFoundError:
                # Removed between listing and stat
                continue
    return snapshot


def diff_snapshots(before: Snapshot, after: Snapshot) -> List[pathlib.Path]:
    """Paths added, removed or modified between two snapshots."""
    changed = [path for path, stamp in after.items() if before.get(path) != stamp]
    changed.extend(path for path in before if path not in after)
    return sorted(changed)


class FileWatcher:
    """Polls a set of paths and calls back when files change.

    The callback runs on the watcher's own daemon thread. Changes made while
    the callback runs are picked up by the next poll.

    Attributes:
        name: Name used for the thread and in log events
        paths: Files or directories being watched
        interval: Seconds between polls
    """

    def __init__(
        self,
        name: str,
        paths: Iterable[pathlib.Path],
        on_change: Callable[[List[pathlib.Path]], None],
        interval: float = 0.5,
        initial_run: bool = False,
    ) -> None:
        self.name = name
        self.paths = [pathlib.Path(p) for p in paths]
        self.interval = interval
        self.initial_run = initial_run
        self._on_change = on_change
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._snapshot: Snapshot = {}

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> FileWatcher:
        if self.running:
            return self
        self._snapshot = snapshot_paths(self.paths)
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=f"watch-{self.name}", daemon=True)
        self._thread.start()
        logger.debug("Watcher started", watcher=self.name, files=len(self._snapshot))
        return self

    def poll(self) -> List[pathlib.Path]:
        """Take a new snapshot and return what changed since the last one."""
        current = snapshot_paths(self.paths)
        changed = diff_snapshots(self._snapshot, current)
        self._snapshot = current
        return changed

    def _run(self) -> None:
        if self.initial_run:
            self._dispatch([])
        while not self._stop_event.wait(self.interval):
            changed = self.poll()
            if not changed:
                continue
            logger.debug("Change detected", watcher=self.name, files=[str(p) for p in changed[:5]])
            self._dispatch(changed)

    def _dispatch(self, changed: List[pathlib.Path]) -> None:
        try:
            self._on_change(changed)
        except Exception as e:
            logger.error("Watch callback failed", watcher=self.name, error=str(e))

    def close(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Watcher did not stop in time", watcher=self.name)
        self._thread = None


class ShutdownScope:
    """Owns the cleanup of every watch loop started in one session.

    Loops register a close callback; :meth:`close` runs each callback once,
    in reverse registration order. A callback that does not return within
    ``close_timeout`` seconds is abandoned so shutdown never blocks.
    """

    def __init__(self, close_timeout: float = 2.0) -> None:
        self.close_timeout = close_timeout
        self._callbacks: List[Tuple[str, Callable[[], None]]] = []
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._finished = threading.Event()
        self._previous_handlers: Dict[int, object] = {}

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def register(self, name: str, callback: Callable[[], None]) -> None:
        """Register a cleanup callback; runs immediately if already closed."""
        with self._lock:
            if not self._closed.is_set():
                self._callbacks.append((name, callback))
                return
        self._run_callback(name, callback)

    def register_handle(self, name: str, handle: WatchHandle) -> None:
        self.register(name, handle.close)

    def close(self) -> None:
        """Run all cleanup callbacks. Safe to call more than once."""
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            callbacks = list(reversed(self._callbacks))
            self._callbacks.clear()

        for name, callback in callbacks:
            self._run_callback(name, callback)
        self.restore_signal_handlers()
        self._finished.set()
        logger.debug("Shutdown scope closed", loops=len(callbacks))

    def _run_callback(self, name: str, callback: Callable[[], None]) -> None:
        errors: List[BaseException] = []

        def target() -> None:
            try:
                callback()
            except Exception as e:
                errors.append(e)

        worker = threading.Thread(target=target, name=f"close-{name}", daemon=True)
        worker.start()
        worker.join(timeout=self.close_timeout)
        if worker.is_alive():
            logger.warning("Watch loop did not close in time, abandoning it", loop=name)
        elif errors:
            logger.warning("Watch loop failed to close cleanly", loop=name, error=str(errors[0]))

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the scope has closed every loop. Returns whether it finished."""
        return self._finished.wait(timeout)

    def install_signal_handlers(self, signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM)) -> None:
        """Close this scope on the given signals.

        Must be called from the main thread.
        """
        for signum in signals:
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _handle_signal(self, signum: int, frame: object) -> None:
        logger.info("Received signal, stopping watch loops", signal=signal.Signals(signum).name)
        # Closing joins threads; do it off the signal frame
        threading.Thread(target=self.close, name="shutdown", daemon=True).start()

    def __enter__(self) -> ShutdownScope:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def watch_stage(
    stage: str,
    paths: Iterable[pathlib.Path],
    run: Callable[[], BuildResult],
    on_result: Callable[[BuildResult], None],
    scope: ShutdownScope,
    on_start: Optional[Callable[[str], None]] = None,
    interval: float = 0.5,
) -> FileWatcher:
    """Start a watch loop that re-runs one pipeline stage on every change.

    The stage runs once right away, then again whenever a file under
    ``paths`` changes. Each run's result is tagged with ``stage`` and handed
    to ``on_result``; exceptions become a failed result. The loop is
    registered with ``scope``.

    Args:
        stage: Stage name (compile, bundle, assets)
        paths: Files or directories to watch
        run: Performs one incremental run of the stage
        on_result: Receives each partial result
        scope: Shutdown scope the loop registers with
        on_start: Called with the stage name before each run
        interval: Seconds between polls

    Returns:
        The started watcher
    """
    def on_change(changed: List[pathlib.Path]) -> None:
        if on_start is not None:
            on_start(stage)
        started = time.monotonic()
        try:
            result = run()
        except Exception as e:
            result = BuildResult.failure(Diagnostic.from_exception(e, stage))
        result.stage = stage
        if not result.duration:
            result.duration = time.monotonic() - started
        on_result(result)

    watcher = FileWatcher(stage, paths, on_change, interval=interval, initial_run=True)
    scope.register(stage, watcher.close)
    return watcher.start()
