"""APScheduler setup for periodic off-line policy improvement."""

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from floodwatch.config import settings
from floodwatch.services import persistence
from floodwatch.services.policy_registry import PolicyRegistry

logger = logging.getLogger(__name__)

_scheduler: BackgroundScheduler | None = None
_registry: PolicyRegistry | None = None


def _run_policy_improvement(registry: PolicyRegistry):
    try:
        promoted = registry.improve_all()
        for location_id in registry.locations():
            persistence.save_policy_snapshot(location_id, registry.export_policy(location_id))
        logger.info("Policy improvement complete: %d promoted", promoted)
    except Exception as e:
        logger.error("Policy improvement job failed: %s", e)


def start_scheduler(registry: PolicyRegistry):
    global _scheduler, _registry
    _registry = registry
    registry.cancel_event.clear()
    _scheduler = BackgroundScheduler()

    _scheduler.add_job(
        _run_policy_improvement,
        "interval",
        args=[registry],
        minutes=settings.policy_improve_interval,
        id="policy_improve",
        name="Alert policy improvement",
        max_instances=1,
    )

    _scheduler.start()
    logger.info("Scheduler started: policy improvement every %d min", settings.policy_improve_interval)


def stop_scheduler():
    global _scheduler, _registry
    if _registry:
        # Running Monte Carlo stops at the next episode boundary
        _registry.cancel_event.set()
        _registry = None
    if _scheduler:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
        _scheduler = None
