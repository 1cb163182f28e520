"""
Shared fixtures: in-memory control plane, SDK provider, stack operations
and asset handlers.
"""
import asyncio
import copy
import io
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from rich.console import Console

from stackpilot.api.credentials import CachedClient
from stackpilot.api.deployments import Deployments
from stackpilot.api.operations import DeployStackResult
from stackpilot.cli import output
from stackpilot.core.config import Environment, LookupRole, StackArtifact
from stackpilot.core.exceptions import ControlPlaneError, CredentialError

ACCOUNT = "123456789012"
REGION = "eu-west-1"
STACK_NAME = "my-stack"
BOOTSTRAP_PARAMETER = "/stackpilot/bootstrap/version"

MUTATING_CALLS = {
    "rollback_stack",
    "continue_update_rollback",
    "create_stack",
    "update_stack",
    "delete_stack",
    "create_change_set",
    "execute_change_set",
}


def stack_arn(name):
    return f"arn:aws:cloudformation:{REGION}:{ACCOUNT}:stack/{name}/guid-{name}"


def make_event(event_id, logical_id, status, reason=None, stack_name=STACK_NAME,
               resource_type="AWS::S3::Bucket", physical_id=None, timestamp=None):
    """Build a raw stack event the way describe_stack_events returns it."""
    event = {
        "EventId": event_id,
        "StackName": stack_name,
        "StackId": stack_arn(stack_name),
        "LogicalResourceId": logical_id,
        "PhysicalResourceId": physical_id if physical_id is not None else f"{logical_id}-physical",
        "ResourceType": resource_type,
        "ResourceStatus": status,
    }
    if reason is not None:
        event["ResourceStatusReason"] = reason
    if timestamp is not None:
        event["Timestamp"] = timestamp
    return event


def make_stack_event(event_id, status, reason=None, stack_name=STACK_NAME, timestamp=None):
    return make_event(
        event_id,
        stack_name,
        status,
        reason=reason,
        stack_name=stack_name,
        resource_type="AWS::CloudFormation::Stack",
        physical_id=stack_arn(stack_name),
        timestamp=timestamp,
    )


class FakeCloudFormation:
    """In-memory CloudFormation with scriptable status transitions.

    ``transitions`` maps a mutating method name to either a status string
    (applied to the call's StackName) or a callable taking the call kwargs.
    ``queued_statuses`` are consumed one per describe_stacks call.
    """

    def __init__(self):
        self.stacks = {}
        self.events = {}
        self.templates = {}
        self.resources = {}
        self.template_summary = {"ResourceIdentifierSummaries": []}
        self.change_sets = {}
        self.transitions = {}
        self.queued_statuses = {}
        self.calls = []

    def add_stack(self, name, status, outputs=None, **extra):
        self.stacks[name] = {
            "StackName": name,
            "StackId": stack_arn(name),
            "StackStatus": status,
            "Outputs": [{"OutputKey": k, "OutputValue": v} for k, v in (outputs or {}).items()],
            **extra,
        }
        return self.stacks[name]

    def set_status(self, name, status):
        self.stacks[name]["StackStatus"] = status

    def queue_statuses(self, name, *statuses):
        self.queued_statuses.setdefault(name, []).extend(statuses)

    def calls_to(self, method):
        return [kwargs for name, kwargs in self.calls if name == method]

    @property
    def mutating_calls(self):
        return [name for name, _ in self.calls if name in MUTATING_CALLS]

    def _record(self, method, kwargs):
        self.calls.append((method, copy.deepcopy(kwargs)))

    def _transition(self, method, kwargs):
        transition = self.transitions.get(method)
        if transition is None:
            return
        if callable(transition):
            transition(kwargs)
        else:
            self.set_status(self._name(kwargs["StackName"]), transition)

    def _name(self, name_or_arn):
        for name, description in self.stacks.items():
            if name_or_arn in (name, description["StackId"]):
                return name
        return name_or_arn

    async def describe_stacks(self, **kwargs):
        self._record("describe_stacks", kwargs)
        name = self._name(kwargs["StackName"])
        queued = self.queued_statuses.get(name)
        if queued and name in self.stacks:
            self.set_status(name, queued.pop(0))
        if name not in self.stacks:
            raise ControlPlaneError(f"Stack with id {name} does not exist", code="ValidationError")
        return {"Stacks": [copy.deepcopy(self.stacks[name])]}

    async def describe_stack_events(self, **kwargs):
        self._record("describe_stack_events", kwargs)
        return {"StackEvents": list(self.events.get(kwargs["StackName"], []))}

    async def list_stack_resources(self, **kwargs):
        self._record("list_stack_resources", kwargs)
        return {"StackResourceSummaries": list(self.resources.get(kwargs["StackName"], []))}

    async def get_template(self, **kwargs):
        self._record("get_template", kwargs)
        return {"TemplateBody": self.templates.get(self._name(kwargs["StackName"]), {})}

    async def get_template_summary(self, **kwargs):
        self._record("get_template_summary", kwargs)
        return self.template_summary

    async def rollback_stack(self, **kwargs):
        self._record("rollback_stack", kwargs)
        self._transition("rollback_stack", kwargs)
        return {}

    async def continue_update_rollback(self, **kwargs):
        self._record("continue_update_rollback", kwargs)
        self._transition("continue_update_rollback", kwargs)
        return {}

    async def create_stack(self, **kwargs):
        self._record("create_stack", kwargs)
        self.add_stack(kwargs["StackName"], "CREATE_COMPLETE")
        self.templates[kwargs["StackName"]] = kwargs.get("TemplateBody")
        self._transition("create_stack", kwargs)
        return {"StackId": stack_arn(kwargs["StackName"])}

    async def update_stack(self, **kwargs):
        self._record("update_stack", kwargs)
        self._transition("update_stack", kwargs)
        return {"StackId": stack_arn(kwargs["StackName"])}

    async def delete_stack(self, **kwargs):
        self._record("delete_stack", kwargs)
        self.stacks.pop(self._name(kwargs["StackName"]), None)
        return {}

    async def create_change_set(self, **kwargs):
        self._record("create_change_set", kwargs)
        self.change_sets[kwargs["ChangeSetName"]] = self.transitions.get(
            "create_change_set", {"Status": "CREATE_COMPLETE"}
        )
        return {}

    async def describe_change_set(self, **kwargs):
        self._record("describe_change_set", kwargs)
        return self.change_sets[kwargs["ChangeSetName"]]

    async def execute_change_set(self, **kwargs):
        self._record("execute_change_set", kwargs)
        name = kwargs["StackName"]
        if name not in self.stacks:
            self.add_stack(name, "CREATE_COMPLETE")
        else:
            self.set_status(name, "UPDATE_COMPLETE")
        return {}

    async def delete_change_set(self, **kwargs):
        self._record("delete_change_set", kwargs)
        self.change_sets.pop(kwargs["ChangeSetName"], None)
        return {}


class FakeSsm:
    def __init__(self, parameters=None):
        self.parameters = dict(parameters or {})
        self.error = None
        self.calls = []

    async def get_parameter(self, **kwargs):
        self.calls.append(kwargs["Name"])
        if self.error is not None:
            raise self.error
        if kwargs["Name"] not in self.parameters:
            raise ControlPlaneError(f"Parameter {kwargs['Name']} not found", code="ParameterNotFound")
        return {"Parameter": {"Name": kwargs["Name"], "Value": str(self.parameters[kwargs["Name"]])}}


class FakeSdk:
    def __init__(self, cfn, ssm, role_arn=None):
        self._cfn = cfn
        self._ssm = ssm
        self.role_arn = role_arn

    def cloudformation(self):
        return self._cfn

    def ssm(self):
        return self._ssm


class FakeSdkProvider:
    """Hands out a new FakeSdk per call and records every call.

    Roles in ``failing_roles`` raise CredentialError, roles in
    ``broken_roles`` raise RuntimeError, and roles in ``unassumable_roles``
    come back with the default credentials.
    """

    def __init__(self, cfn, ssm, account=ACCOUNT, region=REGION):
        self.cfn = cfn
        self.ssm = ssm
        self.account = account
        self.region = region
        self.failing_roles = set()
        self.broken_roles = set()
        self.unassumable_roles = set()
        self.calls = []

    @property
    def default_region(self):
        return self.region

    async def default_account(self):
        return self.account

    async def for_environment(self, environment, mode, options=None):
        self.calls.append((environment, mode, options))
        # Let concurrent callers interleave.
        await asyncio.sleep(0)
        role_arn = options.assume_role_arn if options else None
        if role_arn in self.failing_roles:
            raise CredentialError(f"Could not assume role {role_arn}", role_arn=role_arn)
        if role_arn in self.broken_roles:
            raise RuntimeError("sts endpoint unreachable")
        did_assume_role = bool(role_arn) and role_arn not in self.unassumable_roles
        return CachedClient(FakeSdk(self.cfn, self.ssm, role_arn), did_assume_role=did_assume_role)


class FakeStackOperations:
    def __init__(self):
        self.deploy_requests = []
        self.destroy_requests = []

    async def deploy_stack(self, request):
        self.deploy_requests.append(request)
        return DeployStackResult(no_op=False, outputs={"Url": "https://example.com"})

    async def destroy_stack(self, request):
        self.destroy_requests.append(request)


class FakeAssetHandler:
    def __init__(self, fail_build=False, fail_publish=False, published=False):
        self.fail_build = fail_build
        self.fail_publish = fail_publish
        self.published = published
        self.builds = 0
        self.publishes = 0

    async def build(self):
        self.builds += 1
        if self.fail_build:
            raise RuntimeError("docker build failed")

    async def is_published(self):
        return self.published

    async def publish(self):
        self.publishes += 1
        if self.fail_publish:
            raise RuntimeError("upload failed")
        self.published = True


class FakeAssetHandlerFactory:
    def __init__(self):
        self.handlers = {}
        self.failing_builds = set()
        self.failing_publishes = set()

    def handler_for(self, entry, environment):
        handler = FakeAssetHandler(
            fail_build=entry.id in self.failing_builds,
            fail_publish=entry.id in self.failing_publishes,
        )
        self.handlers[entry.id] = handler
        return handler


@pytest.fixture
def cfn():
    return FakeCloudFormation()


@pytest.fixture
def ssm():
    return FakeSsm({BOOTSTRAP_PARAMETER: 30})


@pytest.fixture
def sdk_provider(cfn, ssm):
    return FakeSdkProvider(cfn, ssm)


@pytest.fixture
def stack_operations():
    return FakeStackOperations()


@pytest.fixture
def asset_handlers():
    return FakeAssetHandlerFactory()


@pytest.fixture
def environment():
    return Environment(account=ACCOUNT, region=REGION)


@pytest.fixture
def stack():
    return StackArtifact(
        stack_name=STACK_NAME,
        display_name="App/MyStack",
        environment=f"aws://{ACCOUNT}/{REGION}",
        template={"Resources": {"Bucket": {"Type": "AWS::S3::Bucket"}}},
        assume_role_arn="arn:${AWS::Partition}:iam::${AWS::AccountId}:role/deploy-role-${AWS::Region}",
        cloudformation_execution_role_arn="arn:${AWS::Partition}:iam::${AWS::AccountId}:role/cfn-exec",
        lookup_role=LookupRole(
            arn="arn:${AWS::Partition}:iam::${AWS::AccountId}:role/lookup-role",
            requires_bootstrap_stack_version=8,
            bootstrap_stack_version_ssm_parameter=BOOTSTRAP_PARAMETER,
        ),
        requires_bootstrap_stack_version=6,
        bootstrap_stack_version_ssm_parameter=BOOTSTRAP_PARAMETER,
    )


@pytest.fixture
def deployments(sdk_provider, stack_operations, asset_handlers):
    return Deployments(
        sdk_provider,
        stack_operations=stack_operations,
        asset_handlers=asset_handlers,
        poll_interval=0,
    )


@pytest.fixture
def console_output():
    """Route the output helpers to uncolored in-memory consoles."""
    out, err = io.StringIO(), io.StringIO()
    with patch.object(output, "console", Console(file=out, width=200, color_system=None)), \
            patch.object(output, "err_console", Console(file=err, width=200, color_system=None)):
        yield SimpleNamespace(out=out, err=err)
