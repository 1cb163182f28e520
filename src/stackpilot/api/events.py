"""Stack event history: polling, nested-stack tracking and activity display."""

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

from stackpilot.api.protocols import CloudFormationClient
from stackpilot.cli import output
from stackpilot.core.exceptions import ControlPlaneError

NESTED_STACK_TYPE = "AWS::CloudFormation::Stack"


@dataclass(frozen=True)
class ResourceEvent:
    event: dict[str, Any]
    parent_stack_logical_ids: tuple[str, ...] = ()
    is_stack_event: bool = False

    @property
    def logical_id(self) -> str:
        return self.event.get("LogicalResourceId") or ""

    @property
    def status(self) -> str:
        return self.event.get("ResourceStatus") or ""

    @property
    def reason(self) -> str | None:
        return self.event.get("ResourceStatusReason")


class StackEventPoller:
    """Reads a stack's event history, following nested stacks.

    Each ``poll`` returns only events not seen before, in chronological
    order. Reading stops at the first already-seen event, at events older
    than ``start_time``, or at the stack's own event entering one of
    ``stack_statuses`` (the start of the operation of interest).
    """

    def __init__(
        self,
        cfn: CloudFormationClient,
        stack_name: str,
        stack_statuses: Iterable[str] = (),
        start_time: datetime | None = None,
        parent_stack_logical_ids: tuple[str, ...] = (),
    ):
        self.cfn = cfn
        self.stack_name = stack_name
        self.stack_statuses = set(stack_statuses)
        self.start_time = start_time
        self.parent_stack_logical_ids = parent_stack_logical_ids
        self.events: list[ResourceEvent] = []
        self._seen: set[str] = set()
        self._nested: dict[str, "StackEventPoller"] = {}

    @property
    def resource_errors(self) -> list[ResourceEvent]:
        return [e for e in self.events if e.status.endswith("_FAILED")]

    async def poll(self) -> list[ResourceEvent]:
        new_events = await self._read_new_events()

        for event in new_events:
            self._track_nested_stack(event)

        for nested in self._nested.values():
            new_events.extend(await nested.poll())

        self.events.extend(new_events)
        return new_events

    async def _read_new_events(self) -> list[ResourceEvent]:
        collected: list[ResourceEvent] = []
        next_token = None
        while True:
            kwargs = {"StackName": self.stack_name}
            if next_token:
                kwargs["NextToken"] = next_token
            response = await self.cfn.describe_stack_events(**kwargs)

            stop = False
            for raw in response.get("StackEvents", []):
                event_id = raw.get("EventId")
                if event_id in self._seen:
                    stop = True
                    break
                timestamp = raw.get("Timestamp")
                if self.start_time is not None and timestamp is not None and timestamp < self.start_time:
                    stop = True
                    break

                is_stack_event = raw.get("PhysicalResourceId") == raw.get("StackId") or (
                    raw.get("ResourceType") == NESTED_STACK_TYPE and raw.get("LogicalResourceId") == self.stack_name
                )
                self._seen.add(event_id)
                collected.append(ResourceEvent(raw, self.parent_stack_logical_ids, is_stack_event))

                if is_stack_event and raw.get("ResourceStatus") in self.stack_statuses:
                    stop = True
                    break

            next_token = response.get("NextToken")
            if stop or not next_token:
                break

        collected.reverse()
        return collected

    def _track_nested_stack(self, event: ResourceEvent) -> None:
        raw = event.event
        physical_id = raw.get("PhysicalResourceId")
        if event.is_stack_event or raw.get("ResourceType") != NESTED_STACK_TYPE or not physical_id:
            return
        if physical_id in self._nested or not event.status.endswith("_IN_PROGRESS"):
            return
        self._nested[physical_id] = StackEventPoller(
            self.cfn,
            physical_id,
            start_time=raw.get("Timestamp"),
            parent_stack_logical_ids=self.parent_stack_logical_ids + (event.logical_id,),
        )


def _is_error_event(status: str) -> bool:
    return status.endswith("_FAILED") or status in ("ROLLBACK_IN_PROGRESS", "UPDATE_ROLLBACK_IN_PROGRESS")


class StackActivityMonitor:
    """Prints stack events in the background and remembers failure reasons."""

    def __init__(
        self,
        cfn: CloudFormationClient,
        stack_name: str,
        poll_interval: float = 2.0,
        start_time: datetime | None = None,
    ):
        self.stack_name = stack_name
        self.poll_interval = poll_interval
        self.poller = StackEventPoller(cfn, stack_name, start_time=start_time)
        self.errors: list[str] = []
        self._task: asyncio.Task | None = None
        self._stopped: asyncio.Event | None = None

    def start(self) -> "StackActivityMonitor":
        self._stopped = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        return self

    async def stop(self) -> None:
        """Let an in-flight tick finish, then read the remaining events."""
        if self._task is not None:
            self._stopped.set()
            await self._task
            self._task = None
        await self._tick()

    async def _run(self) -> None:
        while not self._stopped.is_set():
            await self._tick()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopped.wait(), timeout=self.poll_interval)

    async def _tick(self) -> None:
        try:
            events = await self.poller.poll()
        except ControlPlaneError as e:
            output.debug(f"Error occurred while monitoring stack: {e}")
            return

        for event in events:
            self._display(event)
            self._check_for_errors(event)

    def _display(self, event: ResourceEvent) -> None:
        resource = "/".join(event.parent_stack_logical_ids + (event.logical_id,))
        resource_type = event.event.get("ResourceType", "")
        output.stack_event(self.stack_name, event.status, f"{resource_type} {resource}".strip(), event.reason)

    def _check_for_errors(self, event: ResourceEvent) -> None:
        if not _is_error_event(event.status):
            return
        reason = event.reason or ""
        # Cancellations are a side effect of some other failure.
        if "cancelled" in reason:
            return
        self.errors.append(reason)


def suffix_with_errors(message: str, errors: list[str] | None = None) -> str:
    if errors:
        return f"{message}: {', '.join(errors)}"
    return message
