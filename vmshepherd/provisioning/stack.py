"""CloudFormation stack lifecycle: create, update, outputs, delete."""

import logging

from botocore.exceptions import ClientError

from vmshepherd.errors import ValidationRejection
from vmshepherd.provisioning.aws_common import error_code
from vmshepherd.retry import RetryPolicies
from vmshepherd.state_machine import STACK_CREATE_TABLE, STACK_DELETE_TABLE, ResourceStateMachine

logger = logging.getLogger(__name__)

DELETE_RETRY_COOLDOWN = 120
STACK_CAPABILITIES = ["CAPABILITY_IAM"]


class StackLifecycle:
    """Drives one named stack through create/update and delete."""

    def __init__(self, cloudformation, stack_name, policies: RetryPolicies | None = None):
        self.cloudformation = cloudformation
        self.stack_name = stack_name
        self.policies = policies or RetryPolicies()

    @property
    def label(self) -> str:
        return f"stack {self.stack_name}"

    # ── Queries ────────────────────────────────────────────────────

    def exists(self) -> bool:
        """True if a stack with this name exists in any state but DELETE_COMPLETE."""
        paginator = self.cloudformation.get_paginator("list_stacks")
        for page in paginator.paginate():
            for summary in page.get("StackSummaries", []):
                if summary["StackName"] == self.stack_name and summary["StackStatus"] != "DELETE_COMPLETE":
                    return True
        return False

    def status(self) -> str:
        """Current stack status; raises ValidationRejection if the provider refuses."""
        return self._describe()["StackStatus"]

    def outputs(self) -> dict[str, str]:
        """Stack output bindings as ``{OutputKey: OutputValue}``."""
        return {o["OutputKey"]: o["OutputValue"] for o in self._describe().get("Outputs", [])}

    def _describe(self) -> dict:
        try:
            response = self.cloudformation.describe_stacks(StackName=self.stack_name)
        except ClientError as e:
            if error_code(e) == "ValidationError":
                raise ValidationRejection(self.label, str(e)) from e
            raise
        return response["Stacks"][0]

    # ── Create / update ────────────────────────────────────────────

    def create(self, template_body, parameters=None):
        """Create the stack and wait for it to converge."""
        logger.info(f"BEGIN create {self.label}")
        self.cloudformation.create_stack(
            StackName=self.stack_name,
            TemplateBody=template_body,
            Parameters=_parameter_list(parameters),
            Capabilities=STACK_CAPABILITIES,
        )
        status = self._wait_converged()
        logger.info(f"END   create {self.label} status={status}")
        return status

    def update(self, template_body, parameters=None):
        """Update the stack in place and wait for it to converge."""
        logger.info(f"BEGIN update {self.label}")
        try:
            self.cloudformation.update_stack(
                StackName=self.stack_name,
                TemplateBody=template_body,
                Parameters=_parameter_list(parameters),
                Capabilities=STACK_CAPABILITIES,
            )
        except ClientError as e:
            if error_code(e) != "ValidationError" or "No updates are to be performed" not in str(e):
                raise
            logger.info(f"{self.label} is already up to date")
        status = self._wait_converged()
        logger.info(f"END   update {self.label} status={status}")
        return status

    def _wait_converged(self):
        return ResourceStateMachine(
            self.label,
            self.status,
            STACK_CREATE_TABLE,
            self.policies.stack_create,
            on_terminal=self._rollback_cleanup,
        ).wait()

    def _rollback_cleanup(self, status):
        logger.error(f"{self.label} reached {status}; stack events with a reason:")
        self.log_failure_events()
        logger.info(f"Deleting failed {self.label}")
        self.cloudformation.delete_stack(StackName=self.stack_name)

    def log_failure_events(self):
        """Log every stack event that carries a status reason."""
        paginator = self.cloudformation.get_paginator("describe_stack_events")
        for page in paginator.paginate(StackName=self.stack_name):
            for event in page.get("StackEvents", []):
                reason = event.get("ResourceStatusReason")
                if reason:
                    logger.error(
                        f"  {event.get('LogicalResourceId')} {event.get('ResourceType')} "
                        f"{event.get('ResourceStatus')}: {reason}"
                    )

    # ── Delete ─────────────────────────────────────────────────────

    def delete(self):
        """Delete the stack, reissuing the delete once if it reports DELETE_FAILED."""
        logger.info(f"BEGIN delete {self.label}")
        self.cloudformation.delete_stack(StackName=self.stack_name)
        ResourceStateMachine(
            self.label,
            self.status,
            STACK_DELETE_TABLE,
            self.policies.stack_delete,
            remediate=lambda: self.cloudformation.delete_stack(StackName=self.stack_name),
            remediation_cooldown=DELETE_RETRY_COOLDOWN,
            confirm_absent=lambda: not self.exists(),
        ).wait()
        logger.info(f"END   delete {self.label}")


def _parameter_list(parameters) -> list[dict]:
    return [{"ParameterKey": k, "ParameterValue": str(v)} for k, v in (parameters or {}).items()]
