import asyncio
from typing import Dict, List, Callable, Any, Optional, Set
from dataclasses import dataclass, field
from enum import Enum
import time

from splforge.shared.system.logging import Logger


class ProgressStage(Enum):
    STATUS_CHANGED = "STATUS_CHANGED"
    VALIDATED = "VALIDATED"
    GROUPS_BUILT = "GROUPS_BUILT"
    ATTEMPT_STARTED = "ATTEMPT_STARTED"
    ATTEMPT_FAILED = "ATTEMPT_FAILED"
    FEE_ESCALATED = "FEE_ESCALATED"
    FALLBACK = "FALLBACK"
    TRANSACTION_LANDED = "TRANSACTION_LANDED"
    ROLLBACK = "ROLLBACK"


@dataclass
class ProgressEvent:
    stage: ProgressStage
    operation_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class ProgressBus:
    """
    Observer channel for operation progress.
    One bus per orchestrator; subscribers never influence control flow.
    """
    def __init__(self, max_history: int = 200):
        self._subscribers: Dict[ProgressStage, List[Callable]] = {s: [] for s in ProgressStage}
        self._history: List[ProgressEvent] = []
        self._max_history = max_history
        # Strong refs so pending async deliveries are not collected
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, callback: Callable[[ProgressEvent], Any], stage: Optional[ProgressStage] = None):
        """Register a callback for one stage, or for every stage when stage is None."""
        stages = [stage] if stage else list(ProgressStage)
        for s in stages:
            if callback not in self._subscribers[s]:
                self._subscribers[s].append(callback)

    def unsubscribe(self, callback: Callable[[ProgressEvent], Any]):
        for callbacks in self._subscribers.values():
            if callback in callbacks:
                callbacks.remove(callback)

    def emit(self, event: ProgressEvent):
        """Emit an event to all subscribers of its stage."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history.pop(0)

        for callback in list(self._subscribers.get(event.stage, [])):
            try:
                if asyncio.iscoroutinefunction(callback):
                    task = asyncio.get_running_loop().create_task(callback(event))
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
                else:
                    callback(event)
            except Exception as e:
                # subscriber failures never propagate into the operation
                Logger.warning(f"[ORCHESTRATOR] Progress subscriber failed: {e}")

    def history(self, operation_id: Optional[str] = None) -> List[ProgressEvent]:
        if operation_id is None:
            return list(self._history)
        return [e for e in self._history if e.operation_id == operation_id]

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            Logger.warning(f"[ORCHESTRATOR] Progress subscriber failed: {error}")

    async def drain(self):
        """Wait for pending async deliveries."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
