"""Scheduled expiry sweep using DBOS."""

import logging
from datetime import datetime

from dbos import DBOS

from turnguard.config import settings
from turnguard.runtime import sweeper

logger = logging.getLogger(__name__)


@DBOS.step()
async def run_sweep_pass() -> dict:
    """Run one sweeper pass and return its report."""
    report = await sweeper.run_once()
    return report.model_dump(mode="json")


@DBOS.scheduled(settings.sweep_cron)
@DBOS.workflow()
async def scheduled_sweep(scheduled_time: datetime, actual_time: datetime) -> dict:
    """Periodic sweep; a pass that misses its slot is simply run late."""
    logger.debug(f"Sweep scheduled for {scheduled_time.isoformat()} started {actual_time.isoformat()}")
    return await run_sweep_pass()
