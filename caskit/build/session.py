"""Reconciliation of watch-mode stage results.

The compile, bundle and asset loops of a watch session report independently
and in no particular order. :class:`WatchSession` tracks the state of each
stage and derives a single "settled" event: it fires once every active stage
has finished its latest run and no stage has started or reported during a
debounce window.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from caskit.build.result import BuildResult, Diagnostic
from caskit.core.logging_manager import get_logger

logger = get_logger(__name__)


class StageState(str, enum.Enum):
    PENDING = "pending"  # Has not reported since the session started
    RUNNING = "running"
    OK = "ok"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionSnapshot:
    """State of all stages at the moment the session settled."""

    generation: int
    states: Dict[str, StageState]
    errors: List[Diagnostic] = field(default_factory=list)
    warnings: List[Diagnostic] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(state == StageState.OK for state in self.states.values())


class WatchSession:
    """Per-stage state machine with a debounced "all stages settled" event.

    Args:
        stages: Names of the stages that run in this session
        on_settled: Called with a :class:`SessionSnapshot` on the timer thread
        debounce: Quiet period in seconds before settling
    """

    def __init__(
        self,
        stages: Iterable[str],
        on_settled: Callable[[SessionSnapshot], None],
        debounce: float = 0.3,
    ) -> None:
        self._states: Dict[str, StageState] = {stage: StageState.PENDING for stage in stages}
        self._results: Dict[str, BuildResult] = {}
        self._on_settled = on_settled
        self._debounce = debounce
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0
        self._closed = False

    @property
    def generation(self) -> int:
        """Number of settled events emitted so far."""
        return self._generation

    def state(self, stage: str) -> StageState:
        return self._states[stage]

    def mark_running(self, stage: str) -> None:
        """Record that a stage started incremental work."""
        with self._lock:
            self._require_stage(stage)
            self._states[stage] = StageState.RUNNING
            self._cancel_timer()

    def report(self, result: BuildResult) -> None:
        """Record the result of a stage run.

        Raises:
            KeyError: If the result's stage is not part of this session
        """
        stage = result.stage or ""
        with self._lock:
            self._require_stage(stage)
            self._results[stage] = result
            self._states[stage] = StageState.OK if result.success else StageState.FAILED
            self._cancel_timer()
            if self._closed or not self._all_finished():
                return
            self._timer = threading.Timer(self._debounce, self._settle)
            self._timer.daemon = True
            self._timer.start()

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._cancel_timer()

    def _settle(self) -> None:
        with self._lock:
            # A timer replaced while it was waiting for the lock is stale
            if self._timer is not threading.current_thread():
                return
            self._timer = None
            if self._closed or not self._all_finished():
                return
            self._generation += 1
            snapshot = SessionSnapshot(
                generation=self._generation,
                states=dict(self._states),
                errors=[e for stage in self._states for e in self._results[stage].errors],
                warnings=[w for stage in self._states for w in self._results[stage].warnings],
            )
        logger.debug("Watch session settled", generation=snapshot.generation, success=snapshot.success)
        self._on_settled(snapshot)

    def _all_finished(self) -> bool:
        return all(state in (StageState.OK, StageState.FAILED) for state in self._states.values())

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _require_stage(self, stage: str) -> None:
        if stage not in self._states:
            raise KeyError(f"Unknown watch stage: {stage!r}")
