"""CloudFormation create/update/delete for the command line.

This is a straightforward rendition: it submits the stack's template as-is
(direct or through a change set), waits for the stack to settle and reports
the outputs. Template diffing and asset staging happen elsewhere.
"""

import asyncio
import json
from datetime import datetime, timezone

from stackpilot.api.cloudformation import DEFAULT_POLL_INTERVAL, CloudFormationStack, stabilize_stack
from stackpilot.api.events import StackActivityMonitor
from stackpilot.api.operations import DeployStackRequest, DeployStackResult, DestroyStackRequest
from stackpilot.api.rollback import new_client_request_token
from stackpilot.cli import output
from stackpilot.core.config import ChangeSetDeployment, HotswapMode
from stackpilot.core.exceptions import ConfigurationError, ControlPlaneError

CAPABILITIES = ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM", "CAPABILITY_AUTO_EXPAND"]
DEFAULT_CHANGE_SET_NAME = "stackpilot-deploy-change-set"
NO_CHANGES_MESSAGES = ("No updates are to be performed", "didn't contain changes", "No changes")


def _is_no_changes(message: str) -> bool:
    return any(m in message for m in NO_CHANGES_MESSAGES)


class Boto3StackOperations:
    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.poll_interval = poll_interval

    async def deploy_stack(self, request: DeployStackRequest) -> DeployStackResult:
        options = request.options
        stack_name = request.stack_name
        cfn = request.sdk.cloudformation()

        if options.hotswap is HotswapMode.HOTSWAP_ONLY:
            raise ConfigurationError("Hotswap-only deployments are not supported by the CloudFormation stack operations")
        if options.hotswap is HotswapMode.FALL_BACK:
            output.warn("Hotswap is not available here; falling back to a full deployment")

        template = options.override_template or options.stack.template
        existing = await CloudFormationStack.lookup(cfn, stack_name)

        if existing.exists and existing.stack_status.is_creation_failure:
            output.debug(f"Found existing stack {stack_name} that had previously failed creation. Deleting it before attempting to re-create it.")
            await cfn.delete_stack(StackName=stack_name)
            deleted = await stabilize_stack(cfn, stack_name, self.poll_interval)
            if deleted is not None:
                raise ControlPlaneError(f"Failed deleting stack {stack_name} that had previously failed creation (current state: {deleted.stack_status})")
            existing = CloudFormationStack(cfn, stack_name)

        if existing.exists and not options.force and not options.parameters:
            if await existing.template() == template:
                output.debug(f"{stack_name}: skipping deployment (use --force to override)")
                return DeployStackResult(no_op=True, outputs=existing.outputs, stack_arn=existing.stack_id)

        common = {
            "StackName": stack_name,
            "TemplateBody": json.dumps(template),
            "Parameters": self._parameters(request, existing.exists),
            "Capabilities": CAPABILITIES,
            "Tags": [{"Key": t.key, "Value": t.value} for t in options.tags],
            "NotificationARNs": options.notification_arns,
        }
        if request.cloudformation_role_arn:
            common["RoleARN"] = request.cloudformation_role_arn

        method = options.deployment_method
        start_time = datetime.now(timezone.utc)
        if isinstance(method, ChangeSetDeployment):
            executed = await self._deploy_with_change_set(request, method, common, existing.exists)
            if not executed:
                return DeployStackResult(no_op=True, outputs=existing.outputs, stack_arn=existing.stack_id)
            if not method.execute:
                output.info(f"Change set {method.change_set_name or DEFAULT_CHANGE_SET_NAME} created and waiting for review")
                return DeployStackResult(no_op=False, outputs=existing.outputs, stack_arn=existing.stack_id)
        else:
            try:
                if existing.exists:
                    await cfn.update_stack(**common, ClientRequestToken=new_client_request_token(), DisableRollback=not options.rollback)
                else:
                    await cfn.create_stack(**common, ClientRequestToken=new_client_request_token(), DisableRollback=not options.rollback)
            except ControlPlaneError as e:
                if _is_no_changes(str(e)):
                    return DeployStackResult(no_op=True, outputs=existing.outputs, stack_arn=existing.stack_id)
                raise

        final = await self._wait(cfn, stack_name, options.quiet, start_time)
        if final is None or not final.stack_status.is_deploy_success:
            status = final.stack_status if final is not None else "NOT_FOUND"
            raise ControlPlaneError(f"The stack named {stack_name} failed to deploy: {status}")
        return DeployStackResult(no_op=False, outputs=final.outputs, stack_arn=final.stack_id)

    async def destroy_stack(self, request: DestroyStackRequest) -> None:
        cfn = request.sdk.cloudformation()
        stack_name = request.stack_name
        existing = await CloudFormationStack.lookup(cfn, stack_name)
        if not existing.exists:
            output.debug(f"Stack {stack_name} does not exist, nothing to destroy")
            return

        kwargs = {"StackName": existing.stack_id or stack_name, "ClientRequestToken": new_client_request_token()}
        if request.cloudformation_role_arn:
            kwargs["RoleARN"] = request.cloudformation_role_arn

        start_time = datetime.now(timezone.utc)
        await cfn.delete_stack(**kwargs)
        final = await self._wait(cfn, existing.stack_id or stack_name, request.quiet, start_time)
        if final is not None:
            raise ControlPlaneError(f"Failed to destroy {stack_name}: {final.stack_status}")

    async def _deploy_with_change_set(self, request, method: ChangeSetDeployment, common: dict, exists: bool) -> bool:
        cfn = request.sdk.cloudformation()
        change_set_name = method.change_set_name or DEFAULT_CHANGE_SET_NAME
        stack_name = request.stack_name

        output.debug(f"Attempting to create ChangeSet with name {change_set_name} for stack {stack_name}")
        await cfn.create_change_set(
            **common,
            ChangeSetName=change_set_name,
            ChangeSetType="UPDATE" if exists else "CREATE",
        )

        while True:
            description = await cfn.describe_change_set(StackName=stack_name, ChangeSetName=change_set_name)
            status = description.get("Status", "")
            if status == "CREATE_COMPLETE":
                break
            if status == "FAILED":
                reason = description.get("StatusReason", "")
                if _is_no_changes(reason):
                    output.debug(f"No changes are to be performed on {stack_name}.")
                    await cfn.delete_change_set(StackName=stack_name, ChangeSetName=change_set_name)
                    return False
                raise ControlPlaneError(f"Failed to create ChangeSet {change_set_name} on {stack_name}: {reason}")
            await asyncio.sleep(self.poll_interval)

        if method.execute:
            output.debug(f"Initiating execution of changeset {change_set_name} on stack {stack_name}")
            await cfn.execute_change_set(
                StackName=stack_name,
                ChangeSetName=change_set_name,
                ClientRequestToken=new_client_request_token(),
                DisableRollback=not request.options.rollback,
            )
        return True

    def _parameters(self, request: DeployStackRequest, exists: bool) -> list[dict]:
        options = request.options
        parameters = []
        for key, value in options.parameters.items():
            if value is not None:
                parameters.append({"ParameterKey": key, "ParameterValue": value})
            elif exists and options.use_previous_parameters:
                parameters.append({"ParameterKey": key, "UsePreviousValue": True})
        return parameters

    async def _wait(self, cfn, stack_name: str, quiet: bool, start_time: datetime) -> CloudFormationStack | None:
        monitor = None
        if not quiet:
            monitor = StackActivityMonitor(cfn, stack_name, start_time=start_time).start()
        try:
            return await stabilize_stack(cfn, stack_name, self.poll_interval)
        finally:
            if monitor is not None:
                await monitor.stop()
