"""
Trigger Scheduler
=================
One timer task per time-based automation.

- arm() always cancels the previous timer for the id before creating a new one
- next fire instants come from croniter, strictly after the last fired
  instant, so the same instant never fires twice
- each firing runs the callback as its own task so a slow automation never
  delays the next tick
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from error_handler import ValidationError

logger = logging.getLogger("modules.scheduler")

FireCallback = Callable[[str, Dict[str, Any]], Awaitable[Any]]


def derive_cron(config: Dict[str, Any]) -> str:
    """
    Cron expression for a time trigger config.

    ``{"cron": "..."}`` is used as-is; ``{"time": "HH:MM", "days": ...}``
    becomes ``"M H * * days"`` with days defaulting to every day.

    Raises:
        ValidationError: malformed time, days or cron expression
    """
    cron = config.get("cron")
    if not cron:
        time_str = config.get("time")
        if not time_str:
            raise ValidationError("Time trigger needs 'cron' or 'time'")
        try:
            hours, minutes = (int(part) for part in str(time_str).split(":"))
        except ValueError:
            raise ValidationError(f"Invalid time '{time_str}', expected HH:MM")
        if not (0 <= hours <= 23 and 0 <= minutes <= 59):
            raise ValidationError(f"Invalid time '{time_str}', expected HH:MM")

        days = config.get("days")
        if days is None or days == "":
            days = "*"
        elif isinstance(days, (list, tuple)):
            days = ",".join(str(int(d)) for d in days) or "*"
        cron = f"{minutes} {hours} * * {days}"

    cron = str(cron).strip()
    if not croniter.is_valid(cron):
        raise ValidationError(f"Invalid cron expression '{cron}'")
    return cron


def resolve_timezone(name: Optional[str], default: str = "UTC") -> ZoneInfo:
    try:
        return ZoneInfo(name or default)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone '{name or default}'")


class TriggerScheduler:
    """
    Per-automation timer scheduler.
    Manages the single live timer of each enabled time-based automation.
    """

    def __init__(self, callback: FireCallback, default_timezone: str = "UTC"):
        self._callback = callback
        self.default_timezone = default_timezone
        self._tasks: Dict[str, asyncio.Task] = {}
        self._expressions: Dict[str, str] = {}
        self._zones: Dict[str, ZoneInfo] = {}
        self._fire_tasks: set = set()
        self.stats = {"armed": 0, "fired": 0, "callback_errors": 0}

    def arm(self, automation_id: str, expression: str, timezone: Optional[str] = None):
        """
        (Re)arm the timer for an automation.
        """
        tz = resolve_timezone(timezone, self.default_timezone)
        if not croniter.is_valid(expression):
            raise ValidationError(f"Invalid cron expression '{expression}'")

        self.disarm(automation_id)

        self._expressions[automation_id] = expression
        self._zones[automation_id] = tz
        self._tasks[automation_id] = asyncio.create_task(self._timer_loop(automation_id, expression, tz))
        self.stats["armed"] += 1
        logger.info(f"[{automation_id}] ⏰ Timer armed: '{expression}' ({tz.key})")

    def disarm(self, automation_id: str) -> bool:
        task = self._tasks.pop(automation_id, None)
        self._expressions.pop(automation_id, None)
        self._zones.pop(automation_id, None)
        if task is None:
            return False
        task.cancel()
        logger.info(f"[{automation_id}] Timer cancelled")
        return True

    def disarm_all(self):
        for automation_id in list(self._tasks):
            self.disarm(automation_id)
        for task in list(self._fire_tasks):
            task.cancel()
        logger.info("Trigger scheduler stopped")

    def is_armed(self, automation_id: str) -> bool:
        task = self._tasks.get(automation_id)
        return task is not None and not task.done()

    def armed_ids(self):
        return [aid for aid in self._tasks if self.is_armed(aid)]

    def get_expression(self, automation_id: str) -> Optional[str]:
        return self._expressions.get(automation_id)

    def next_fire_time(self, automation_id: str) -> Optional[float]:
        expression = self._expressions.get(automation_id)
        if not expression:
            return None
        tz = self._zones.get(automation_id) or ZoneInfo(self.default_timezone)
        return croniter(expression, datetime.now(tz)).get_next(float)

    async def _timer_loop(self, automation_id: str, expression: str, tz: ZoneInfo):
        """Sleep until each cron instant and fire."""
        schedule = croniter(expression, datetime.now(tz))
        while True:
            try:
                fire_at = schedule.get_next(float)
                delay = fire_at - time.time()
                if delay > 0:
                    await asyncio.sleep(delay)

                self.stats["fired"] += 1
                logger.debug(f"[{automation_id}] Timer fired")
                task = asyncio.create_task(self._fire(automation_id, fire_at))
                self._fire_tasks.add(task)
                task.add_done_callback(self._fire_tasks.discard)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[{automation_id}] Timer error: {e}")
                await asyncio.sleep(30)

    async def _fire(self, automation_id: str, fire_at: float):
        try:
            await self._callback(automation_id, {"type": "time", "timestamp": fire_at})
        except Exception as e:
            self.stats["callback_errors"] += 1
            logger.error(f"[{automation_id}] Scheduled trigger failed: {e}")
