"""
Reminder sweep endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import MicrofinanceSystem, get_system
from .schemas import RunRemindersRequest
from ..logging_config import get_logger, log_action


router = APIRouter()
logger = get_logger("ngnasoro.api.reminders")


@router.post("/run")
async def run_reminders(
    request: Optional[RunRemindersRequest] = None,
    detailed: bool = False,
    system: MicrofinanceSystem = Depends(get_system)
):
    """
    Run the reminder sweep now

    Returns {success, notificationsCreated}; pass ``detailed=true`` for the
    failure, skip and late-installment counts as well.
    """
    today = request.today if request else None
    result = system.run_reminders(today)

    log_action(
        logger, "info", "Manual reminder sweep",
        action="run_reminders",
        resource=result.run_date.isoformat(),
        extra={"notifications_created": result.notifications_created, "failed": result.failed}
    )

    if detailed:
        return result.to_dict()
    return {
        "success": result.success,
        "notificationsCreated": result.notifications_created
    }


@router.get("/scheduler")
async def scheduler_status(system: MicrofinanceSystem = Depends(get_system)):
    """State of the daily reminder trigger"""
    scheduler = system.scheduler
    return {
        "running": scheduler.is_running(),
        "cron": scheduler.cron,
        "next_run": scheduler.next_run().isoformat(),
        "last_run": scheduler.last_run.isoformat() if scheduler.last_run else None
    }
