from __future__ import annotations

import logging

from apscheduler.triggers.interval import IntervalTrigger

from classbook.config import settings
from classbook.services.notifier_service import NotifierService
from classbook.services.slot_service import SlotService

log = logging.getLogger("scheduler.setup")


def setup_scheduler(scheduler, SessionLocal) -> None:
    async def run_notifier() -> None:
        try:
            async with SessionLocal() as session:
                report = await NotifierService.run(session)
            log.info("notifier.job done: %s", report.as_dict())
        except Exception:
            log.exception("notifier.job failed")

    async def complete_past() -> None:
        try:
            async with SessionLocal() as session:
                done = await SlotService.complete_past(session)
            log.info("slots.complete_past job done: %s slots", done)
        except Exception:
            log.exception("slots.complete_past job failed")

    if settings.notifier_enabled:
        scheduler.add_job(
            run_notifier,
            trigger=IntervalTrigger(minutes=settings.notifier_interval_minutes),
            id="notifier.run",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )
        log.info("notifier.run scheduled every %s min", settings.notifier_interval_minutes)

    scheduler.add_job(
        complete_past,
        trigger=IntervalTrigger(hours=1),
        id="slots.complete_past",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
