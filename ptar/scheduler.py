import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from . import notifications
from .config import settings

logger = logging.getLogger(__name__)

# (name, cron expression "minute hour * * *", check)
JOBS: List[Tuple[str, str, Callable]] = [
    ("maintenance", "0 8 * * *", notifications.check_upcoming_maintenance),
    ("parameters", "0 */4 * * *", notifications.check_parameter_alerts),
    ("emergency-tasks", "0 * * * *", notifications.check_emergency_tasks),
]


def _field_matches(field: str, value: int) -> bool:
    for part in field.split(","):
        part = part.strip()
        if part == "*":
            return True
        if part.startswith("*/"):
            step = int(part[2:])
            if step > 0 and value % step == 0:
                return True
        elif part.isdigit() and int(part) == value:
            return True
    return False


def cron_matches(expr: str, when: datetime) -> bool:
    """Minute and hour fields only; day fields must be '*'."""
    minute, hour, *_ = expr.split()
    return _field_matches(minute, when.minute) and _field_matches(hour, when.hour)


async def _run(name: str, check: Callable) -> None:
    try:
        await asyncio.to_thread(check)
    except Exception as e:
        logger.error("Scheduled check '%s' failed: %s", name, e)


async def scheduler_loop(startup_delay: Optional[int] = None) -> None:
    """Background task: runs every job whose cron expression matches the current minute."""
    delay = settings.scheduler_startup_delay_seconds if startup_delay is None else startup_delay
    await asyncio.sleep(delay)
    await _run("maintenance", notifications.check_upcoming_maintenance)
    await _run("emergency-tasks", notifications.check_emergency_tasks)

    last_tick = None
    while True:
        now = datetime.now().replace(second=0, microsecond=0)
        if now != last_tick:
            last_tick = now
            for name, expr, check in JOBS:
                if cron_matches(expr, now):
                    logger.info("Running scheduled check '%s'", name)
                    await _run(name, check)
        await asyncio.sleep(30)


def start_scheduler() -> Optional[asyncio.Task]:
    if not settings.scheduler_enabled:
        logger.info("Notification scheduler disabled")
        return None
    logger.info("Notification scheduler started: %s", ", ".join(f"{n} [{e}]" for n, e, _ in JOBS))
    return asyncio.create_task(scheduler_loop())
