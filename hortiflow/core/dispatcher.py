"""HortiFlow Action Dispatcher — executes a triggered rule's actions.

Every action is attempted exactly once, in declared order, under its own
timeout. A failing or slow action is recorded as a failed outcome and the
remaining actions still run. Commands to the same device never overlap: a
device command first waits for any earlier one on that device, including one
whose timeout already expired.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from hortiflow.core.actions import (
    Action,
    DeviceCommand,
    DeviceControlAction,
    NotificationAction,
    QueueAction,
    WebhookAction,
)
from hortiflow.core.errors import ActionTimeoutError
from hortiflow.core.evaluator import StateSnapshot
from hortiflow.core.notification import render_template
from hortiflow.core.providers import ActionQueue, DeviceStore, Notifier, WebhookCaller
from hortiflow.core.rules import AutomationRule

logger = logging.getLogger("hortiflow.dispatcher")

DEVICE_REVERT_QUEUE = "device_revert"


@dataclass
class DispatchContext:
    """What an action handler may read about the trigger."""

    rule: AutomationRule
    now: datetime
    snapshot: StateSnapshot | None = None


@dataclass
class DispatchResult:
    outcomes: list[dict] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(o["success"] for o in self.outcomes)

    @property
    def failed(self) -> list[dict]:
        return [o for o in self.outcomes if not o["success"]]


class ActionDispatcher:
    """Runs actions through a handler registry keyed by action type."""

    def __init__(
        self,
        devices: DeviceStore,
        notifier: Notifier,
        webhooks: WebhookCaller,
        queue: ActionQueue,
        timeout: float = 10.0,
    ):
        self.devices = devices
        self.notifier = notifier
        self.webhooks = webhooks
        self.queue = queue
        self.timeout = timeout
        # Last write per device; a timed-out write keeps running in its thread
        self._device_writes: dict[str, asyncio.Task] = {}
        self._registry: dict[str, Callable[[Action, DispatchContext], Awaitable[dict]]] = {}
        self._register_handlers()

    def _register_handlers(self):
        self._registry = {
            "notification": self._handle_notification,
            "device_control": self._handle_device_control,
            "webhook": self._handle_webhook,
            "queue": self._handle_queue,
        }

    async def dispatch(self, actions: list[Action], context: DispatchContext) -> DispatchResult:
        result = DispatchResult()
        for index, action in enumerate(actions):
            result.outcomes.append(await self._run_one(index, action, context))

        if result.failed:
            logger.warning(
                f"Rule {context.rule.id}: {len(result.failed)}/{len(actions)} action(s) failed"
            )
        return result

    async def _run_one(self, index: int, action: Action, context: DispatchContext) -> dict:
        handler = self._registry[action.type]
        outcome = {"action_index": index, "type": action.type}
        started = time.perf_counter()
        try:
            if isinstance(action, DeviceControlAction):
                await self._wait_for_device(action.device_id)
            try:
                data = await asyncio.wait_for(handler(action, context), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                raise ActionTimeoutError(action.type, self.timeout) from e
            outcome.update(success=True, result=data)
        except Exception as e:
            logger.error(f"Rule {context.rule.id} action #{index} ({action.type}) failed: {e}")
            outcome.update(success=False, error=str(e) or type(e).__name__)
        outcome["execution_time_ms"] = round((time.perf_counter() - started) * 1000, 2)
        return outcome

    async def _wait_for_device(self, device_id: str):
        """Block until an earlier write to this device has landed (or failed)."""
        pending = self._device_writes.get(device_id)
        while pending is not None and not pending.done():
            logger.info(f"Device {device_id}: waiting for previous command to finish")
            await asyncio.wait({pending})
            pending = self._device_writes.get(device_id)

    def _settle_device_write(self, device_id: str, task: asyncio.Task):
        if self._device_writes.get(device_id) is task:
            del self._device_writes[device_id]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Device {device_id}: command failed: {task.exception()}")

    # ── Handlers ──────────────────────────────────────────────────────────────

    async def _handle_notification(self, action: NotificationAction, context: DispatchContext) -> dict:
        variables = {
            **(context.snapshot.sensor_variables() if context.snapshot else {}),
            **action.variables,
            "rule_id": context.rule.id,
            "rule_name": context.rule.name,
            "timestamp": context.now.isoformat(),
        }
        message = render_template(action.template, variables)
        title = render_template(action.title, variables) if action.title else None
        channels = [c.value for c in action.channels]

        delivered = await self.notifier.send_notification(
            message,
            title=title,
            channels=channels,
            priority=action.priority,
            metadata={"rule_id": context.rule.id, "rule_name": context.rule.name},
        )
        failed = [channel for channel, ok in delivered.items() if not ok]
        if failed:
            raise RuntimeError(f"Notification not delivered on: {', '.join(failed)}")
        return {"message": message, "channels": delivered}

    async def _handle_device_control(self, action: DeviceControlAction, context: DispatchContext) -> dict:
        write = asyncio.ensure_future(asyncio.to_thread(
            self.devices.apply_device_action, action.device_id, action.action.value, action.value
        ))
        self._device_writes[action.device_id] = write
        write.add_done_callback(lambda task: self._settle_device_write(action.device_id, task))
        state = await asyncio.shield(write)
        if action.duration_minutes:
            state["revert_job_id"] = await asyncio.to_thread(
                self.queue.enqueue,
                DEVICE_REVERT_QUEUE,
                self._revert_payload(action, state, context),
                "high",
            )
        return state

    def _revert_payload(self, action: DeviceControlAction, state: dict, context: DispatchContext) -> dict:
        """Command that restores the device to its pre-action state."""
        if action.action is DeviceCommand.SET_VALUE:
            command, value = DeviceCommand.SET_VALUE, state.get("previous_value")
        elif state.get("previous_status") == "on":
            command, value = DeviceCommand.TURN_ON, None
        else:
            command, value = DeviceCommand.TURN_OFF, None
        return {
            "device_id": action.device_id,
            "action": command.value,
            "value": value,
            "due_at": (context.now + timedelta(minutes=action.duration_minutes)).isoformat(),
            "rule_id": context.rule.id,
        }

    async def _handle_webhook(self, action: WebhookAction, context: DispatchContext) -> dict:
        return await self.webhooks.call_webhook(
            str(action.url),
            method=action.method,
            headers=action.headers,
            payload=action.payload,
        )

    async def _handle_queue(self, action: QueueAction, context: DispatchContext) -> dict:
        payload = {**action.payload, "rule_id": context.rule.id}
        job_id = await asyncio.to_thread(self.queue.enqueue, action.queue_name, payload, action.priority)
        return {"queue_name": action.queue_name, "job_id": job_id}
