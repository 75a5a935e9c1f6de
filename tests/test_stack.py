"""Tests for vmshepherd.provisioning.stack.StackLifecycle."""

import logging
from unittest.mock import MagicMock

import pytest

from vmshepherd.errors import RemediationFailedError, UnexpectedStateError, ValidationRejection
from vmshepherd.provisioning.stack import StackLifecycle


def _cloudformation(statuses, stacks=None, events=None):
    """Fake CloudFormation client reporting *statuses* in order from describe_stacks."""
    cfn = MagicMock()
    items = list(statuses)

    def _describe(StackName):
        value = items.pop(0)
        if isinstance(value, Exception):
            raise value
        return {"Stacks": [{"StackName": StackName, "StackStatus": value, "Outputs": []}]}

    cfn.describe_stacks.side_effect = _describe

    paginators = {
        "list_stacks": [{"StackSummaries": stacks or []}],
        "describe_stack_events": [{"StackEvents": events or []}],
    }

    def _get_paginator(name):
        paginator = MagicMock()
        paginator.paginate.return_value = paginators[name]
        return paginator

    cfn.get_paginator.side_effect = _get_paginator
    return cfn


# ── create / update ─────────────────────────────────────────────


def test_create_waits_for_complete(sleeps):
    cfn = _cloudformation(["CREATE_IN_PROGRESS"] * 3 + ["CREATE_COMPLETE"])
    stack = StackLifecycle(cfn, "pcf")

    assert stack.create("{}", {"KeyPair": "k", "Count": 2}) == "CREATE_COMPLETE"
    cfn.create_stack.assert_called_once_with(
        StackName="pcf",
        TemplateBody="{}",
        Parameters=[
            {"ParameterKey": "KeyPair", "ParameterValue": "k"},
            {"ParameterKey": "Count", "ParameterValue": "2"},
        ],
        Capabilities=["CAPABILITY_IAM"],
    )
    assert cfn.describe_stacks.call_count == 4
    assert sleeps == [30, 30, 30]


def test_create_rollback_logs_events_and_deletes(caplog):
    events = [
        {"LogicalResourceId": "Vpc", "ResourceType": "AWS::EC2::VPC", "ResourceStatus": "CREATE_FAILED",
         "ResourceStatusReason": "limit exceeded"},
        {"LogicalResourceId": "Subnet", "ResourceType": "AWS::EC2::Subnet", "ResourceStatus": "CREATE_COMPLETE"},
    ]
    cfn = _cloudformation(["CREATE_IN_PROGRESS", "ROLLBACK_IN_PROGRESS", "ROLLBACK_COMPLETE"], events=events)
    stack = StackLifecycle(cfn, "pcf")

    with caplog.at_level(logging.ERROR), pytest.raises(UnexpectedStateError, match="ROLLBACK_COMPLETE"):
        stack.create("{}")

    assert "limit exceeded" in caplog.text
    assert "Subnet" not in caplog.text
    cfn.delete_stack.assert_called_once_with(StackName="pcf")


def test_create_unknown_status_is_fatal():
    cfn = _cloudformation(["CREATE_IN_PROGRESS", "IMPORT_IN_PROGRESS"])
    with pytest.raises(UnexpectedStateError, match="IMPORT_IN_PROGRESS"):
        StackLifecycle(cfn, "pcf").create("{}")
    cfn.delete_stack.assert_not_called()


def test_update_without_changes_is_tolerated(client_error):
    cfn = _cloudformation(["UPDATE_COMPLETE"])
    cfn.update_stack.side_effect = client_error("ValidationError", "No updates are to be performed.")
    assert StackLifecycle(cfn, "pcf").update("{}") == "UPDATE_COMPLETE"


def test_update_other_validation_errors_propagate(client_error):
    cfn = _cloudformation([])
    cfn.update_stack.side_effect = client_error("ValidationError", "Template format error")
    with pytest.raises(Exception, match="Template format error"):
        StackLifecycle(cfn, "pcf").update("{}")


# ── queries ─────────────────────────────────────────────────────


def test_exists_ignores_deleted_stacks():
    stacks = [
        {"StackName": "pcf", "StackStatus": "DELETE_COMPLETE"},
        {"StackName": "other", "StackStatus": "CREATE_COMPLETE"},
    ]
    assert StackLifecycle(_cloudformation([], stacks=stacks), "pcf").exists() is False

    stacks.append({"StackName": "pcf", "StackStatus": "UPDATE_COMPLETE"})
    assert StackLifecycle(_cloudformation([], stacks=stacks), "pcf").exists() is True


def test_outputs_as_dict():
    cfn = MagicMock()
    cfn.describe_stacks.return_value = {
        "Stacks": [{"StackStatus": "CREATE_COMPLETE", "Outputs": [{"OutputKey": "vpc", "OutputValue": "vpc-1"}]}]
    }
    assert StackLifecycle(cfn, "pcf").outputs() == {"vpc": "vpc-1"}


def test_status_validation_error_becomes_rejection(client_error):
    cfn = _cloudformation([client_error("ValidationError", "Stack with id pcf does not exist")])
    with pytest.raises(ValidationRejection):
        StackLifecycle(cfn, "pcf").status()


# ── delete ──────────────────────────────────────────────────────


def test_delete_remediates_single_failure(sleeps):
    cfn = _cloudformation(["DELETE_IN_PROGRESS", "DELETE_FAILED", "DELETE_IN_PROGRESS", "DELETE_COMPLETE"])
    StackLifecycle(cfn, "pcf").delete()

    assert cfn.delete_stack.call_count == 2
    assert 120 in sleeps


def test_delete_twice_failed_is_fatal():
    cfn = _cloudformation(["DELETE_FAILED", "DELETE_IN_PROGRESS", "DELETE_FAILED"])
    with pytest.raises(RemediationFailedError, match="Two delete retries have failed for stack pcf"):
        StackLifecycle(cfn, "pcf").delete()
    assert cfn.delete_stack.call_count == 2


def test_delete_vanished_stack_is_success(client_error):
    cfn = _cloudformation(["DELETE_IN_PROGRESS", client_error("ValidationError", "Stack with id pcf does not exist")])
    StackLifecycle(cfn, "pcf").delete()
    cfn.delete_stack.assert_called_once_with(StackName="pcf")


def test_delete_rejection_while_stack_exists_is_reraised(client_error):
    cfn = _cloudformation(
        [client_error("ValidationError", "Rate exceeded")],
        stacks=[{"StackName": "pcf", "StackStatus": "DELETE_IN_PROGRESS"}],
    )
    with pytest.raises(ValidationRejection, match="Rate exceeded"):
        StackLifecycle(cfn, "pcf").delete()
