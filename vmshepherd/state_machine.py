"""Status-string state machine for converging external resources."""

import logging
import time
from dataclasses import dataclass, field

from vmshepherd.errors import RemediationFailedError, UnexpectedStateError, ValidationRejection
from vmshepherd.retry import PollResult, RetryPolicy, poll

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateTable:
    """Classification of the statuses a resource can report while converging."""

    goal: frozenset[str]
    progress: frozenset[str]
    terminal: frozenset[str] = field(default_factory=frozenset)
    remediable: str | None = None


STACK_CREATE_TABLE = StateTable(
    goal=frozenset({"CREATE_COMPLETE", "UPDATE_COMPLETE"}),
    progress=frozenset(
        {
            "CREATE_IN_PROGRESS",
            "UPDATE_IN_PROGRESS",
            "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS",
            "ROLLBACK_IN_PROGRESS",
        }
    ),
    terminal=frozenset({"ROLLBACK_COMPLETE"}),
)

STACK_DELETE_TABLE = StateTable(
    goal=frozenset({"DELETE_COMPLETE"}),
    progress=frozenset({"DELETE_IN_PROGRESS"}),
    remediable="DELETE_FAILED",
)


class ResourceStateMachine:
    """Poll a resource status until it reaches a goal state.

    Args:
        resource: human-readable resource label used in errors (e.g. "stack web").
        read_status: callable returning the current status string. May raise
            ValidationRejection when the provider refuses to describe the resource.
        table: StateTable classifying statuses.
        policy: RetryPolicy bounding the number of polls.
        remediate: called once the first time the remediable status is seen.
        remediation_cooldown: seconds to sleep after remediating.
        on_terminal: called with the status before raising on a terminal status.
        confirm_absent: callable returning True when the resource is verifiably
            gone; used to turn a ValidationRejection into success.
    """

    def __init__(
        self,
        resource,
        read_status,
        table: StateTable,
        policy: RetryPolicy,
        remediate=None,
        remediation_cooldown=0,
        on_terminal=None,
        confirm_absent=None,
    ):
        self.resource = resource
        self.read_status = read_status
        self.table = table
        self.policy = policy
        self.remediate = remediate
        self.remediation_cooldown = remediation_cooldown
        self.on_terminal = on_terminal
        self.confirm_absent = confirm_absent
        self.remediations = 0

    def wait(self):
        """Block until a goal status; returns that status."""
        return poll(self.policy, self._check, f"{self.resource} to converge")

    def _check(self) -> PollResult:
        try:
            status = self.read_status()
        except ValidationRejection:
            if self.confirm_absent is not None and self.confirm_absent():
                logger.info(f"{self.resource} no longer exists")
                return PollResult.done(None)
            raise

        logger.info(f"{self.resource} status: {status}")
        if status in self.table.goal:
            return PollResult.done(status)
        if status in self.table.progress:
            return PollResult.pending(status)
        if status in self.table.terminal:
            if self.on_terminal is not None:
                self.on_terminal(status)
            raise UnexpectedStateError(self.resource, status)
        if self.table.remediable is not None and status == self.table.remediable:
            return self._remediate(status)
        raise UnexpectedStateError(self.resource, status)

    def _remediate(self, status) -> PollResult:
        if self.remediate is None or self.remediations >= 1:
            raise RemediationFailedError(
                self.resource,
                status,
                f"Two delete retries have failed for {self.resource} : {status}",
            )
        self.remediations += 1
        logger.info(f"{self.resource} reported {status}, remediating")
        self.remediate()
        time.sleep(self.remediation_cooldown)
        return PollResult.pending(status)
