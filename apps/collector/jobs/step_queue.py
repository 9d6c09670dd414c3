"""
In-process work queue for short pipeline steps.

A step is an async function that does a bounded amount of work and returns
either ``Continue`` (run another step later) or ``Done``. The worker runs one
step at a time and enqueues whatever continuation the step returns, so long
jobs become a chain of small steps that each persist their own progress.

Steps receive their kwargs plus the queue's shared context (store, client).
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Continue:
    """Schedule ``step`` with ``kwargs`` after ``delay`` seconds."""
    step: str
    kwargs: dict = field(default_factory=dict)
    delay: float = 0.0


@dataclass(frozen=True)
class Done:
    """The chain ends here."""
    reason: str = ""


StepResult = Union[Continue, Done]
StepFn = Callable[..., Awaitable[Optional[StepResult]]]


@dataclass(order=True)
class _Item:
    run_at: float
    seq: int
    step: str = field(compare=False)
    kwargs: dict = field(compare=False)


class StepQueue:
    """Delay-ordered queue of pending steps with a single-consumer worker."""

    def __init__(self, context: Optional[dict[str, Any]] = None):
        self.context: dict[str, Any] = dict(context or {})
        self._steps: dict[str, StepFn] = {}
        self._heap: list[_Item] = []
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._running: Optional[_Item] = None
        self.steps_run = 0

    def register(self, name: str, fn: StepFn) -> None:
        self._steps[name] = fn

    def enqueue(self, step: str, delay: float = 0.0, **kwargs) -> None:
        if step not in self._steps:
            raise KeyError(f"Unknown step: {step}")
        heapq.heappush(self._heap, _Item(time.monotonic() + delay, next(self._seq), step, kwargs))
        logger.debug(f"Enqueued {step} {kwargs} (delay={delay}s)")
        self._wakeup.set()

    def __len__(self) -> int:
        return len(self._heap)

    def is_queued(self, step: str, **match) -> bool:
        """True if a matching step is waiting or currently running."""
        items = list(self._heap)
        if self._running is not None:
            items.append(self._running)
        return any(
            item.step == step and all(item.kwargs.get(k) == v for k, v in match.items())
            for item in items
        )

    async def run_next(self, respect_schedule: bool = True) -> Optional[StepResult]:
        """
        Pop and run one step.

        Returns the step's result, or None when nothing was due. A step that
        raises is logged and its chain dropped.
        """
        if not self._heap:
            return None
        if respect_schedule and self._heap[0].run_at > time.monotonic():
            return None

        item = heapq.heappop(self._heap)
        self._running = item
        fn = self._steps[item.step]
        try:
            result = await fn(**item.kwargs, **self.context)
        except Exception:
            logger.exception(f"Step {item.step} {item.kwargs} failed; dropping continuation")
            return Done(reason="error")
        finally:
            self._running = None
            self.steps_run += 1

        if isinstance(result, Continue):
            self.enqueue(result.step, delay=result.delay, **result.kwargs)
            return result
        return result or Done()

    async def drain(self, max_steps: int = 10_000) -> int:
        """Run steps until the queue is empty, ignoring delays. Returns steps run."""
        count = 0
        while self._heap and count < max_steps:
            await self.run_next(respect_schedule=False)
            count += 1
        return count

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Worker loop: run due steps until ``stop`` is set."""
        logger.info(f"Step worker starting ({len(self._steps)} registered steps)")
        while not stop.is_set():
            if self._heap and self._heap[0].run_at <= time.monotonic():
                await self.run_next()
                continue

            self._wakeup.clear()
            timeout = None
            if self._heap:
                timeout = max(self._heap[0].run_at - time.monotonic(), 0.0)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout if timeout is not None else 1.0)
            except asyncio.TimeoutError:
                continue
        logger.info("Step worker stopped")
