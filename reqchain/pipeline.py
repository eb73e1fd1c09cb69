"""reqchain pipeline - ordered chains of async middleware stages.

A stage is any ``async (context, next)`` callable. It may work on the
context before awaiting ``next()``, after it, or skip ``next()`` entirely
to short-circuit the rest of the chain. ``next()`` may be awaited at most
once per invocation.

Three pipelines are built from the same engine: one over the transport
``HandlerConfig``, one over the outgoing ``RequestDescriptor`` and one over
the completed ``ResponseDescriptor``.
"""

from collections.abc import Awaitable, Callable, Iterable
from typing import Generic, TypeVar

from reqchain.errors import PipelineError

C = TypeVar("C")

Next = Callable[[], Awaitable[None]]
Stage = Callable[[C, Next], Awaitable[None]]
Terminal = Callable[[C], Awaitable[None]]


class Pipeline(Generic[C]):
    """A composed, reusable chain of stages over a single context value."""

    def __init__(self, stages: Iterable[Stage], terminal: Terminal | None = None):
        self.stages: tuple[Stage, ...] = tuple(stages)
        self.terminal = terminal

    def __len__(self) -> int:
        return len(self.stages)

    async def invoke(self, context: C) -> None:
        """Run every stage in registration order against context."""
        await self._dispatch(0, context)

    async def _dispatch(self, index: int, context: C) -> None:
        if index == len(self.stages):
            if self.terminal is not None:
                await self.terminal(context)
            return

        stage = self.stages[index]
        called = False

        async def next_() -> None:
            nonlocal called
            if called:
                raise PipelineError(f"Stage {stage!r} called next() more than once")
            called = True
            await self._dispatch(index + 1, context)

        await stage(context, next_)


class PipelineBuilder(Generic[C]):
    """Fluent builder: ``PipelineBuilder().use(a).use(b).build()``."""

    def __init__(self):
        self._stages: list[Stage] = []
        self._terminal: Terminal | None = None

    def use(self, stage: Stage) -> "PipelineBuilder[C]":
        self._stages.append(stage)
        return self

    def run(self, terminal: Terminal) -> "PipelineBuilder[C]":
        self._terminal = terminal
        return self

    def build(self) -> Pipeline[C]:
        return Pipeline(self._stages, self._terminal)


def build_pipeline(stages: Iterable[Stage], terminal: Terminal | None = None) -> Pipeline:
    """Compose stages into a pipeline. Order is registration order."""
    return Pipeline(stages, terminal)
