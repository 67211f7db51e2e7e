"""
Post-commit actions: side effects that run after a ledger mutation has committed.
Each action is independent and individually fallible; a failure is logged and counted, the
remaining actions still run, and nothing is reported back to the triggering transition.
"""
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from washledger.metrics import post_commit_failures_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostCommitAction:
    name: str
    run: Callable[[], Awaitable[Any]]


@dataclass
class ActionOutcome:
    name: str
    ok: bool
    result: Any = None
    error: str | None = None


async def run_post_commit(actions: list[PostCommitAction], context: str = "") -> list[ActionOutcome]:
    """Run actions in order. A DispatchResult-style return with success=False counts as a failure."""
    outcomes: list[ActionOutcome] = []
    for action in actions:
        try:
            result = await action.run()
        except Exception as e:
            logger.exception("Post-commit action %s failed %s", action.name, context)
            post_commit_failures_total.labels(action=action.name).inc()
            outcomes.append(ActionOutcome(name=action.name, ok=False, error=str(e)))
            continue
        if getattr(result, "success", True) is False:
            logger.warning("Post-commit action %s did not succeed %s: %s", action.name, context, getattr(result, "error", None))
            post_commit_failures_total.labels(action=action.name).inc()
            outcomes.append(ActionOutcome(name=action.name, ok=False, result=result, error=getattr(result, "error", None)))
            continue
        outcomes.append(ActionOutcome(name=action.name, ok=True, result=result))
    return outcomes
