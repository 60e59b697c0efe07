# classbook/main.py
from __future__ import annotations

import asyncio, logging, sys
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import text

from classbook.config import settings
from classbook.runtime import drain
from classbook.scheduler.jobs import setup_scheduler
from classbook.storage.db import SessionLocal, engine, init_db

log = logging.getLogger("classbook")

async def main() -> None:
    logging.basicConfig(level=logging.INFO, stream=sys.stdout)
    await init_db()
    async with engine.begin() as conn:
        await conn.execute(text("select 1"))

    scheduler = AsyncIOScheduler(timezone=settings.tz)
    setup_scheduler(scheduler, SessionLocal)
    scheduler.start()
    log.info("classbook started tz=%s db=%s", settings.tz, engine.url.render_as_string(hide_password=True))

    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await drain()
        await engine.dispose()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        print("classbook stopped")
