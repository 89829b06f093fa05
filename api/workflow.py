"""
Ordered workflow steps with a per-step failure policy.

ABORT steps must succeed: when one fails, every completed step is undone in
reverse order and the error propagates. ISOLATE steps may fail: the failure
is logged and handed back as a warning while the workflow carries on.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from pymongo.errors import PyMongoError

from .db import operation_timeout
from .errors import BloodSyncError, PersistenceUnavailable

logger = logging.getLogger(__name__)

ABORT = 'abort'
ISOLATE = 'isolate'


@dataclass
class Step:
    name: str
    action: Callable[[], Any]
    undo: Optional[Callable[[Any], None]] = None
    policy: str = ABORT


@dataclass
class WorkflowResult:
    offer: Any = None
    request: Any = None
    donation: Any = None
    notifications: List[Any] = field(default_factory=list)
    warnings: List[BloodSyncError] = field(default_factory=list)


def run_steps(operation, steps, timeout=None):
    """Run `steps` in order; returns the warnings raised by isolated steps"""
    completed = []
    warnings = []
    for step in steps:
        try:
            with operation_timeout(timeout):
                result = step.action()
        except (BloodSyncError, PyMongoError) as e:
            error = e if isinstance(e, BloodSyncError) else PersistenceUnavailable()
            if step.policy == ISOLATE:
                logger.warning("%s: step %s failed, continuing: %s", operation, step.name, e)
                warnings.append(error)
                continue
            logger.warning("%s: step %s failed, rolling back %d step(s): %s",
                           operation, step.name, len(completed), e)
            _rollback(operation, completed, timeout)
            if error is e:
                raise
            raise error from e
        completed.append((step, result))
    return warnings


def _rollback(operation, completed, timeout):
    for step, result in reversed(completed):
        if step.undo is None:
            continue
        try:
            with operation_timeout(timeout):
                step.undo(result)
        except PyMongoError as e:
            logger.error("%s: could not undo step %s: %s", operation, step.name, e)
