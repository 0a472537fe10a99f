"""
Post-commit scheduler: best-effort callbacks run after the primary path.

Hooks run sequentially in registration order. A failing hook is logged and
recorded; it never stops the remaining hooks and never reaches the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

logger = logging.getLogger("orchestrator")

PostCommitHook = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class HookOutcome:
    index: int
    success: bool
    error: Optional[str] = None


class PostCommitScheduler:
    def __init__(self) -> None:
        self._hooks: List[PostCommitHook] = []

    @property
    def pending(self) -> int:
        return len(self._hooks)

    def schedule(self, hook: PostCommitHook) -> None:
        self._hooks.append(hook)

    def clear(self) -> None:
        self._hooks = []

    async def run(self) -> List[HookOutcome]:
        """Drain the queue. The queue is cleared whether or not any hook failed."""
        if not self._hooks:
            return []

        hooks, self._hooks = self._hooks, []
        outcomes: List[HookOutcome] = []
        for index, hook in enumerate(hooks):
            try:
                await hook()
            except Exception as exc:
                logger.exception("post-commit hook failed index=%d of=%d", index, len(hooks))
                outcomes.append(HookOutcome(index=index, success=False, error=str(exc)))
            else:
                outcomes.append(HookOutcome(index=index, success=True))

        failed = sum(1 for o in outcomes if not o.success)
        logger.debug("post-commit hooks ran total=%d failed=%d", len(outcomes), failed)
        return outcomes
