"""
Automation Engine - Triggers, Conditions and Action Sequences
=============================================================
Holds the automation table, matches time and state events to triggers,
evaluates conditions and executes action lists.

Per automation:  Idle -> Evaluating -> Executing -> Idle
A trigger arriving while an automation is not idle is a collision and is
dropped (logged, never queued).

Trigger origins:
  time    - TriggerScheduler timer (cron / HH:MM shorthand)
  state   - device.state_changed events from the registry
  manual  - API call

Action types:
  device_control - DeviceRegistry.control_device()
  delay          - suspend this automation only (milliseconds)
  notification   - fire-and-forget bus event

Action failures are recorded per action and never abort the list. Anything
else that goes wrong inside a run becomes an "error" log entry and an
automation.error event; nothing escapes trigger().
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from device import new_id
from error_handler import GenerationError, HubError, NotFoundError, ValidationError
from json_helpers import prepare_for_json
from modules.automation_models import (
    Automation, AutomationLogEntry, DayOfWeekCondition, DelayAction,
    DeviceControlAction, DeviceStateCondition, NotificationAction,
    TimeRangeCondition, UnknownCondition, decode_automation, time_to_minutes,
)
from modules.event_bus import Event, EventBus, EventType
from modules.scheduler import TriggerScheduler, derive_cron, resolve_timezone

logger = logging.getLogger("modules.automation")

UPDATABLE_FIELDS = {"name", "description", "enabled", "trigger", "conditions", "actions"}
DEFAULT_LOG_LIMIT = 50
MAX_TRACE_ENTRIES = 200


# ============================================================================
# VALUE COMPARISON
# ============================================================================

def values_equal(a: Any, b: Any) -> bool:
    """
    Deep equality that never treats a boolean as equal to a number.
    """
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    return a == b


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _greater(a: Any, b: Any) -> bool:
    return _is_number(a) and _is_number(b) and a > b


def _less(a: Any, b: Any) -> bool:
    return _is_number(a) and _is_number(b) and a < b


def matches_state_trigger(config, old_state: Dict[str, Any], new_state: Dict[str, Any]) -> bool:
    """
    Does an observed (old_state, new_state) pair satisfy a state trigger?

    Unknown operators never match.
    """
    prop = config.property
    expected = config.value
    new_value = new_state.get(prop)
    old_value = old_state.get(prop)
    operator = config.operator

    if operator == "equals":
        return values_equal(new_value, expected)
    if operator == "changes_to":
        return values_equal(new_value, expected) and not values_equal(old_value, expected)
    if operator == "changes_from":
        return values_equal(old_value, expected) and not values_equal(new_value, expected)
    if operator == "greater_than":
        return _greater(new_value, expected)
    if operator == "less_than":
        return _less(new_value, expected)
    if operator == "changes":
        return not values_equal(new_value, old_value)
    return False


class AutomationEngine:

    def __init__(self, registry, storage, bus: EventBus, ai_service=None,
                 execution_timeout: float = 300, purge_logs_on_delete: bool = True,
                 timezone: str = "UTC"):
        self.registry = registry
        self.storage = storage
        self.bus = bus
        self.ai = ai_service
        self.execution_timeout = execution_timeout
        self.purge_logs_on_delete = purge_logs_on_delete
        self.timezone = timezone

        self.automations: Dict[str, Automation] = {}
        self.running: Set[str] = set()
        self.scheduler = TriggerScheduler(self.trigger, default_timezone=timezone)

        self._tasks: Set[asyncio.Task] = set()
        self._subscribed = False

        self._trace_log: List[Dict[str, Any]] = []

        self._stats = {
            "triggers": 0, "collisions": 0, "skipped": 0,
            "successes": 0, "errors": 0, "action_failures": 0,
        }

    async def _io(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def load(self) -> int:
        """Load automations, arm timers of enabled time automations, subscribe to state changes."""
        rows = await self._io(self.storage.load_automations)
        self.automations.clear()
        for row in rows:
            try:
                automation = decode_automation(row)
            except ValidationError as e:
                logger.error(f"Skipping stored automation {row.get('id')}: {e}")
                continue
            self.automations[automation.id] = automation
            self._sync_timer(automation)

        if not self._subscribed:
            self.bus.subscribe(self._on_state_changed, [EventType.DEVICE_STATE_CHANGED])
            self._subscribed = True

        logger.info(f"Automation engine loaded {len(self.automations)} automation(s), "
                    f"{len(self.scheduler.armed_ids())} timer(s) armed")
        return len(self.automations)

    async def shutdown(self):
        self.scheduler.disarm_all()
        if self._subscribed:
            self.bus.unsubscribe(self._on_state_changed)
            self._subscribed = False
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Automation engine stopped")

    async def wait_idle(self):
        """Wait for every in-flight trigger task, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, automation_id: str, event: Dict[str, Any]) -> asyncio.Task:
        task = asyncio.create_task(self.trigger(automation_id, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def fire(self, automation_id: str, event: Optional[Dict[str, Any]] = None) -> asyncio.Task:
        """Schedule trigger() as a background task (manual/API origin)."""
        return self._spawn(automation_id, event or {"type": "manual", "timestamp": time.time()})

    # =========================================================================
    # TRACE
    # =========================================================================

    def _add_trace(self, automation_id: str, level: str, message: str, **extra):
        trace = {"automation_id": automation_id, "level": level, "message": message,
                 "timestamp": time.time(), **extra}
        self._trace_log.append(trace)
        if len(self._trace_log) > MAX_TRACE_ENTRIES:
            self._trace_log = self._trace_log[-MAX_TRACE_ENTRIES:]

        log_msg = f"[AUTO {automation_id}] {message}"
        if level == "ERROR": logger.error(log_msg)
        elif level == "WARNING": logger.warning(log_msg)
        elif level == "INFO": logger.info(log_msg)
        else: logger.debug(log_msg)

    def get_trace_log(self) -> List[Dict[str, Any]]:
        return list(self._trace_log)

    # =========================================================================
    # TIMERS
    # =========================================================================

    def _sync_timer(self, automation: Automation):
        """Exactly one timer while enabled and time-based, none otherwise."""
        if automation.is_time_based and automation.enabled:
            config = automation.trigger.config
            try:
                self.scheduler.arm(automation.id, derive_cron(config.model_dump()), config.timezone)
            except ValidationError as e:
                logger.error(f"[{automation.id}] Cannot arm timer: {e}")
        else:
            self.scheduler.disarm(automation.id)

    def _validate_schedule(self, automation: Automation):
        if automation.is_time_based:
            config = automation.trigger.config
            derive_cron(config.model_dump())
            resolve_timezone(config.timezone, self.timezone)

    # =========================================================================
    # CRUD
    # =========================================================================

    @staticmethod
    def _normalise_definition(definition: Dict[str, Any]) -> Dict[str, Any]:
        """Accept the flat trigger_type/trigger_config form as well as a nested trigger."""
        data = dict(definition or {})
        trigger_type = data.pop("trigger_type", None) or data.pop("triggerType", None)
        trigger_config = data.pop("trigger_config", None) or data.pop("triggerConfig", None)
        if "trigger" not in data and trigger_type:
            data["trigger"] = {"type": trigger_type, "config": trigger_config or {}}
        return data

    async def create(self, definition: Dict[str, Any], created_by: Optional[str] = None) -> Automation:
        """
        Validate, persist and activate a new automation.

        Raises:
            ValidationError: malformed definition, time spec or cron expression
        """
        data = self._normalise_definition(definition)
        now = time.time()
        data.update({
            "id": new_id(),
            "created_by": data.get("created_by") or created_by,
            "last_triggered": None,
            "trigger_count": 0,
            "created_at": now,
            "updated_at": now,
        })
        if "trigger" not in data:
            raise ValidationError("Automation needs a trigger")

        automation = decode_automation(data)
        self._validate_schedule(automation)

        await self._io(self.storage.upsert_automation, automation.to_dict())

        self.automations[automation.id] = automation
        self._sync_timer(automation)

        logger.info(f"[{automation.id}] ✅ Created automation '{automation.name}' ({automation.trigger.type} trigger)")
        self.bus.publish(EventType.AUTOMATION_CREATED, {"automation": automation.to_dict()})
        return automation.model_copy(deep=True)

    async def create_from_natural_language(self, prompt: str, user_id: Optional[str] = None,
                                           provider: Optional[str] = None) -> Automation:
        """
        Ask the AI collaborator for an automation and create it.

        Raises:
            GenerationError: AI failure or an unusable automation; nothing is created
        """
        if self.ai is None:
            raise GenerationError("No AI service configured")
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt is required")

        context = {
            "devices": [
                {"id": d.id, "name": d.name, "type": d.type,
                 "capabilities": sorted(d.capabilities), "state": d.state}
                for d in self.registry.list()
            ],
            "automations": [
                {"name": a.name, "description": a.description}
                for a in self.automations.values()
            ],
        }

        try:
            spec = await self.ai.generate_automation(prompt, context, provider=provider)
        except GenerationError:
            raise
        except Exception as e:
            logger.error(f"AI generation failed: {e}")
            raise GenerationError(f"AI generation failed: {e}") from e

        if not isinstance(spec, dict):
            raise GenerationError("AI returned a non-object automation")

        definition = {
            "name": spec.get("name"),
            "description": spec.get("description"),
            "trigger": spec.get("trigger"),
            "conditions": spec.get("conditions") or [],
            "actions": spec.get("actions") or [],
            "ai_generated": True,
            "ai_metadata": {
                "original_prompt": prompt,
                "generated_at": time.time(),
                "provider": spec.get("_provider"),
                "model": spec.get("_model"),
            },
        }
        try:
            automation = await self.create(definition, created_by=user_id)
        except ValidationError as e:
            logger.error(f"AI produced an invalid automation: {e}")
            raise GenerationError(f"AI produced an invalid automation: {e.message}", e.details) from e

        logger.info(f"[{automation.id}] 🤖 Created AI-generated automation '{automation.name}'")
        return automation

    async def update(self, automation_id: str, patch: Dict[str, Any]) -> Automation:
        """
        Merge allowed fields; re-derive the timer when trigger or enabled changed.
        """
        current = self.automations.get(automation_id)
        if current is None:
            raise NotFoundError(f"Automation {automation_id} not found")

        patch = dict(patch or {})
        trigger_config = patch.pop("trigger_config", None) or patch.pop("triggerConfig", None)
        if trigger_config is not None and "trigger" not in patch:
            patch["trigger"] = {"type": current.trigger.type, "config": trigger_config}

        changes = {k: v for k, v in patch.items() if k in UPDATABLE_FIELDS}
        if not changes:
            raise ValidationError("No updatable fields given", {"allowed": sorted(UPDATABLE_FIELDS)})

        merged = {**current.to_dict(), **changes, "updated_at": time.time()}
        updated = decode_automation(merged)
        self._validate_schedule(updated)

        await self._io(self.storage.upsert_automation, updated.to_dict())

        # Counters may have moved while we were persisting
        latest = self.automations.get(automation_id)
        if latest is None:
            await self._io(self.storage.delete_automation, automation_id, False)
            raise NotFoundError(f"Automation {automation_id} was deleted during update")
        updated.trigger_count = latest.trigger_count
        updated.last_triggered = latest.last_triggered
        self.automations[automation_id] = updated

        if "trigger" in changes or "enabled" in changes:
            self._sync_timer(updated)

        logger.info(f"[{automation_id}] Updated automation '{updated.name}': {', '.join(changes)}")
        self.bus.publish(EventType.AUTOMATION_UPDATED, {"automation": updated.to_dict(), "changes": sorted(changes)})
        return updated.model_copy(deep=True)

    async def delete(self, automation_id: str):
        automation = self.automations.get(automation_id)
        if automation is None:
            raise NotFoundError(f"Automation {automation_id} not found")

        # Timer stays armed until the row is really gone
        await self._io(self.storage.delete_automation, automation_id, self.purge_logs_on_delete)
        self.scheduler.disarm(automation_id)
        if self.automations.pop(automation_id, None) is None:
            return

        logger.info(f"[{automation_id}] Deleted automation '{automation.name}'")
        self.bus.publish(EventType.AUTOMATION_DELETED, {"automation_id": automation_id, "name": automation.name})

    def get(self, automation_id: str) -> Optional[Automation]:
        automation = self.automations.get(automation_id)
        return automation.model_copy(deep=True) if automation else None

    def list(self, enabled: Optional[bool] = None, created_by: Optional[str] = None) -> List[Automation]:
        result = []
        for automation in sorted(self.automations.values(), key=lambda a: a.created_at):
            if enabled is not None and automation.enabled != enabled:
                continue
            if created_by is not None and automation.created_by != created_by:
                continue
            result.append(automation.model_copy(deep=True))
        return result

    # =========================================================================
    # STATE TRIGGERS
    # =========================================================================

    def _on_state_changed(self, event: Event):
        """Match state triggers synchronously; each match runs as its own task."""
        payload = event.payload
        device_id = payload.get("device_id")
        old_state = payload.get("old_state") or {}
        new_state = payload.get("new_state") or {}

        for automation in list(self.automations.values()):
            if not automation.enabled or automation.trigger.type != "state":
                continue
            config = automation.trigger.config
            if config.device_id != device_id:
                continue
            if matches_state_trigger(config, old_state, new_state):
                self._spawn(automation.id, {
                    "type": "state",
                    "device_id": device_id,
                    "old_state": old_state,
                    "new_state": new_state,
                    "triggered_by": payload.get("triggered_by"),
                    "timestamp": event.timestamp,
                })

    # =========================================================================
    # TRIGGER
    # =========================================================================

    async def trigger(self, automation_id: str, event: Optional[Dict[str, Any]] = None):
        """
        Fire an automation. Never raises.

        Unknown or disabled automations are ignored; an automation that is
        already running drops the trigger.
        """
        automation = self.automations.get(automation_id)
        if automation is None or not automation.enabled:
            return

        # Check-and-add with no await in between
        if automation_id in self.running:
            self._stats["collisions"] += 1
            self._add_trace(automation_id, "INFO", f"Already running, trigger dropped: {automation.name}")
            return
        self.running.add(automation_id)

        try:
            await self._run(automation, event or {})
        finally:
            self.running.discard(automation_id)

    async def _run(self, automation: Automation, event: Dict[str, Any]):
        automation_id = automation.id
        self._stats["triggers"] += 1
        try:
            self._add_trace(automation_id, "INFO", f"⚡ Triggering '{automation.name}'",
                            origin=event.get("type"))

            if not self.evaluate_conditions(automation.conditions):
                self._stats["skipped"] += 1
                self._add_trace(automation_id, "INFO", f"Conditions not met, skipping '{automation.name}'")
                return

            if self.execution_timeout:
                try:
                    results = await asyncio.wait_for(
                        self.execute_actions(automation.actions, actor=automation_id),
                        timeout=self.execution_timeout,
                    )
                except asyncio.TimeoutError:
                    raise TimeoutError(f"Execution timed out after {self.execution_timeout}s")
            else:
                results = await self.execute_actions(automation.actions, actor=automation_id)

            # Counter first, then the log entry
            now = time.time()
            count = await self._io(self.storage.record_trigger, automation_id, now)
            current = self.automations.get(automation_id)
            if current is not None:
                current.trigger_count = count if count is not None else current.trigger_count + 1
                current.last_triggered = now
                entry = self._log_entry(automation_id, "success", event, results)
                await self._io(self.storage.append_log, entry.to_dict())
            else:
                self._add_trace(automation_id, "WARNING", f"'{automation.name}' was deleted mid-run, no log kept")

            failures = sum(1 for r in results if not r["success"])
            self._stats["successes"] += 1
            self._stats["action_failures"] += failures
            self._add_trace(automation_id, "INFO",
                            f"✅ '{automation.name}' executed ({len(results) - failures}/{len(results)} actions ok)")
            self.bus.publish(EventType.AUTOMATION_TRIGGERED, {
                "automation_id": automation_id,
                "name": automation.name,
                "trigger_data": prepare_for_json(event),
                "results": results,
                "trigger_count": count,
            })

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats["errors"] += 1
            message = e.message if isinstance(e, HubError) and e.message else str(e) or type(e).__name__
            self._add_trace(automation_id, "ERROR", f"💥 '{automation.name}' failed: {message}")
            try:
                if automation_id in self.automations:
                    entry = self._log_entry(automation_id, "error", event, [], error=message)
                    await self._io(self.storage.append_log, entry.to_dict())
            except Exception as log_error:
                logger.error(f"[{automation_id}] Could not record error log entry: {log_error}")
            self.bus.publish(EventType.AUTOMATION_ERROR, {
                "automation_id": automation_id,
                "name": automation.name,
                "error": message,
            })

    @staticmethod
    def _log_entry(automation_id: str, status: str, event: Dict[str, Any],
                   results: List[Dict[str, Any]], error: Optional[str] = None) -> AutomationLogEntry:
        return AutomationLogEntry(
            id=new_id(),
            automation_id=automation_id,
            status=status,
            trigger_data=prepare_for_json(event),
            actions_executed=results,
            error=error,
            timestamp=time.time(),
        )

    # =========================================================================
    # CONDITIONS
    # =========================================================================

    def _now(self) -> datetime:
        return datetime.now(resolve_timezone(self.timezone))

    def evaluate_conditions(self, conditions, now: Optional[datetime] = None) -> bool:
        """AND semantics, short-circuit on the first false condition."""
        if not conditions:
            return True
        now = now or self._now()
        for condition in conditions:
            if not self.evaluate_condition(condition, now):
                return False
        return True

    def evaluate_condition(self, condition, now: Optional[datetime] = None) -> bool:
        now = now or self._now()

        if isinstance(condition, DeviceStateCondition):
            device = self.registry.get(condition.device_id)
            if device is None:
                return False
            value = device.state.get(condition.property)
            if condition.operator == "equals":
                return values_equal(value, condition.value)
            if condition.operator == "not_equals":
                return not values_equal(value, condition.value)
            if condition.operator == "greater_than":
                return _greater(value, condition.value)
            if condition.operator == "less_than":
                return _less(value, condition.value)
            return False

        if isinstance(condition, TimeRangeCondition):
            # Same-day ranges only; a range wrapping midnight never matches
            current = now.hour * 60 + now.minute
            return time_to_minutes(condition.start) <= current <= time_to_minutes(condition.end)

        if isinstance(condition, DayOfWeekCondition):
            # Python: Monday = 0. Conditions: Sunday = 0.
            return (now.weekday() + 1) % 7 in condition.days

        if isinstance(condition, UnknownCondition):
            logger.warning(f"Unknown condition type: {condition.type}")
            return True

        logger.warning(f"Unknown condition object: {condition!r}")
        return True

    # =========================================================================
    # ACTIONS
    # =========================================================================

    async def execute_actions(self, actions, actor: Optional[str] = None) -> List[Dict[str, Any]]:
        """Run actions in order. A failing action is recorded and the next one still runs."""
        results = []
        for action in actions:
            record = {"action": action.model_dump(mode="json", by_alias=True)}
            try:
                result = await self.execute_action(action, actor=actor)
                record.update({"success": True, "result": prepare_for_json(result)})
            except asyncio.CancelledError:
                raise
            except Exception as e:
                message = e.message if isinstance(e, HubError) and e.message else str(e)
                logger.warning(f"Action {action.type} failed: {message}")
                record.update({"success": False, "error": message})
            results.append(record)
        return results

    async def execute_action(self, action, actor: Optional[str] = None) -> Any:
        if isinstance(action, DeviceControlAction):
            return await self.registry.control_device(
                action.device_id, action.command, action.parameters, actor=actor,
            )

        if isinstance(action, DelayAction):
            await asyncio.sleep(action.duration / 1000.0)
            return {"delayed": action.duration}

        if isinstance(action, NotificationAction):
            self.bus.publish(EventType.NOTIFICATION, {
                "automation_id": actor,
                "title": action.title,
                "message": action.message,
                "level": action.level,
            })
            return {"sent": True}

        raise ValidationError(f"Unknown action type: {getattr(action, 'type', action)!r}")

    # =========================================================================
    # LOGS & STATS
    # =========================================================================

    async def get_logs(self, automation_id: str, limit: int = DEFAULT_LOG_LIMIT) -> List[AutomationLogEntry]:
        rows = await self._io(self.storage.get_logs, automation_id, limit)
        return [AutomationLogEntry(**row) for row in rows]

    async def purge_logs(self, max_age_days: float) -> int:
        before = time.time() - max_age_days * 86400
        removed = await self._io(self.storage.purge_logs, before)
        if removed:
            logger.info(f"🧹 Purged {removed} automation log entries older than {max_age_days} days")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "total_automations": len(self.automations),
            "enabled_automations": sum(1 for a in self.automations.values() if a.enabled),
            "armed_timers": len(self.scheduler.armed_ids()),
            "running": len(self.running),
        }
