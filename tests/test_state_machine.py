"""Tests for vmshepherd.state_machine.ResourceStateMachine."""

import pytest

from vmshepherd.errors import (
    RemediationFailedError,
    RetryLimitExceeded,
    UnexpectedStateError,
    ValidationRejection,
)
from vmshepherd.retry import RetryPolicy
from vmshepherd.state_machine import STACK_CREATE_TABLE, STACK_DELETE_TABLE, ResourceStateMachine


def _statuses(*values):
    items = list(values)

    def _read():
        value = items.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    return _read


POLICY = RetryPolicy(10, 30)


def test_create_converges_after_progress_states(sleeps):
    machine = ResourceStateMachine(
        "stack s",
        _statuses("CREATE_IN_PROGRESS", "CREATE_IN_PROGRESS", "CREATE_IN_PROGRESS", "CREATE_COMPLETE"),
        STACK_CREATE_TABLE,
        POLICY,
    )
    assert machine.wait() == "CREATE_COMPLETE"
    assert sleeps == [30, 30, 30]


def test_update_complete_is_a_goal():
    machine = ResourceStateMachine(
        "stack s", _statuses("UPDATE_IN_PROGRESS", "UPDATE_COMPLETE"), STACK_CREATE_TABLE, POLICY
    )
    assert machine.wait() == "UPDATE_COMPLETE"


def test_terminal_status_runs_hook_then_raises():
    seen = []
    machine = ResourceStateMachine(
        "stack s",
        _statuses("CREATE_IN_PROGRESS", "ROLLBACK_COMPLETE"),
        STACK_CREATE_TABLE,
        POLICY,
        on_terminal=seen.append,
    )
    with pytest.raises(UnexpectedStateError, match="Unexpected status for stack s : ROLLBACK_COMPLETE"):
        machine.wait()
    assert seen == ["ROLLBACK_COMPLETE"]


@pytest.mark.parametrize("position", [0, 2])
def test_unknown_status_raises_wherever_it_appears(position):
    statuses = ["CREATE_IN_PROGRESS"] * 3
    statuses.insert(position, "SOMETHING_ODD")
    machine = ResourceStateMachine("stack s", _statuses(*statuses), STACK_CREATE_TABLE, POLICY)
    with pytest.raises(UnexpectedStateError) as excinfo:
        machine.wait()
    assert excinfo.value.status == "SOMETHING_ODD"


def test_remediates_once_with_cooldown(sleeps):
    remediations = []
    machine = ResourceStateMachine(
        "stack s",
        _statuses("DELETE_IN_PROGRESS", "DELETE_FAILED", "DELETE_IN_PROGRESS", "DELETE_COMPLETE"),
        STACK_DELETE_TABLE,
        POLICY,
        remediate=lambda: remediations.append(1),
        remediation_cooldown=120,
    )
    assert machine.wait() == "DELETE_COMPLETE"
    assert remediations == [1]
    assert 120 in sleeps


def test_second_remediable_status_is_fatal():
    remediations = []
    machine = ResourceStateMachine(
        "stack s",
        _statuses("DELETE_FAILED", "DELETE_FAILED", "DELETE_COMPLETE"),
        STACK_DELETE_TABLE,
        POLICY,
        remediate=lambda: remediations.append(1),
    )
    with pytest.raises(RemediationFailedError, match="Two delete retries have failed for stack s : DELETE_FAILED"):
        machine.wait()
    assert remediations == [1]


def test_validation_rejection_with_absent_resource_is_success():
    machine = ResourceStateMachine(
        "stack s",
        _statuses("DELETE_IN_PROGRESS", ValidationRejection("stack s", "does not exist")),
        STACK_DELETE_TABLE,
        POLICY,
        confirm_absent=lambda: True,
    )
    assert machine.wait() is None


def test_validation_rejection_with_present_resource_is_reraised():
    machine = ResourceStateMachine(
        "stack s",
        _statuses(ValidationRejection("stack s", "throttled")),
        STACK_DELETE_TABLE,
        POLICY,
        confirm_absent=lambda: False,
    )
    with pytest.raises(ValidationRejection):
        machine.wait()


def test_never_converging_exceeds_limit():
    machine = ResourceStateMachine(
        "stack s", lambda: "CREATE_IN_PROGRESS", STACK_CREATE_TABLE, RetryPolicy(3, 1)
    )
    with pytest.raises(RetryLimitExceeded):
        machine.wait()
