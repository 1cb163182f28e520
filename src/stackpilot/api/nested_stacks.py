"""Loading deployed templates of a stack together with its nested stacks."""

from dataclasses import dataclass, field
from typing import Any

from stackpilot.api.cloudformation import CloudFormationStack
from stackpilot.api.events import NESTED_STACK_TYPE
from stackpilot.api.protocols import CloudFormationClient


@dataclass
class NestedStackTemplates:
    physical_name: str | None
    deployed_template: dict[str, Any]
    nested_stacks: dict[str, "NestedStackTemplates"] = field(default_factory=dict)


@dataclass
class RootTemplateWithNestedStacks:
    deployed_root_template: dict[str, Any]
    nested_stacks: dict[str, NestedStackTemplates] = field(default_factory=dict)


def stack_name_from_arn(arn: str) -> str:
    # arn:aws:cloudformation:<region>:<account>:stack/<name>/<guid>
    if arn.startswith("arn:") and ":stack/" in arn:
        return arn.split(":stack/", 1)[1].split("/", 1)[0]
    return arn


async def load_current_template_with_nested_stacks(
    cfn: CloudFormationClient, stack_name: str
) -> RootTemplateWithNestedStacks:
    stack = await CloudFormationStack.lookup(cfn, stack_name)
    template = await stack.template()
    nested = await _load_nested_stacks(cfn, stack_name if stack.exists else None, template)
    return RootTemplateWithNestedStacks(template, nested)


async def _load_nested_stacks(
    cfn: CloudFormationClient,
    parent_stack_name: str | None,
    template: dict[str, Any],
) -> dict[str, NestedStackTemplates]:
    logical_ids = [
        logical_id
        for logical_id, resource in (template.get("Resources") or {}).items()
        if resource.get("Type") == NESTED_STACK_TYPE
    ]
    if not logical_ids:
        return {}

    physical_names = await _nested_stack_physical_names(cfn, parent_stack_name) if parent_stack_name else {}

    nested: dict[str, NestedStackTemplates] = {}
    for logical_id in logical_ids:
        physical_name = physical_names.get(logical_id)
        if physical_name is None:
            nested[logical_id] = NestedStackTemplates(None, {})
            continue
        child = await CloudFormationStack.lookup(cfn, physical_name)
        child_template = await child.template()
        nested[logical_id] = NestedStackTemplates(
            physical_name,
            child_template,
            await _load_nested_stacks(cfn, physical_name if child.exists else None, child_template),
        )
    return nested


async def _nested_stack_physical_names(cfn: CloudFormationClient, stack_name: str) -> dict[str, str]:
    names: dict[str, str] = {}
    next_token = None
    while True:
        kwargs = {"StackName": stack_name}
        if next_token:
            kwargs["NextToken"] = next_token
        response = await cfn.list_stack_resources(**kwargs)
        for summary in response.get("StackResourceSummaries", []):
            if summary.get("ResourceType") == NESTED_STACK_TYPE and summary.get("PhysicalResourceId"):
                names[summary["LogicalResourceId"]] = stack_name_from_arn(summary["PhysicalResourceId"])
        next_token = response.get("NextToken")
        if not next_token:
            return names
