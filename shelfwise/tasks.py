"""
Shelfwise periodic tasks — Celery app and the expired-grant sweep.

Expired grants are already ignored by the access resolver; the sweep only
reclaims storage. Run a worker with beat:

    celery -A shelfwise.tasks worker --beat
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from celery import Celery
from celery.schedules import crontab

from shelfwise.engine.config import ShelfwiseConfig, get_config
from shelfwise.engine.errors import ConfigError

logger = logging.getLogger("shelfwise.tasks")

SWEEP_TASK_NAME = "shelfwise.tasks.sweep_expired_grants"

_celery_app: Optional[Celery] = None


def build_beat_schedule(config: ShelfwiseConfig) -> Dict[str, Any]:
    """Beat schedule for the grant sweep, from security.grant_sweep_cron."""
    minute, hour, day_of_month, month_of_year, day_of_week = config.security.grant_sweep_cron.split()
    return {
        "sweep-expired-grants": {
            "task": SWEEP_TASK_NAME,
            "schedule": crontab(
                minute=minute,
                hour=hour,
                day_of_month=day_of_month,
                month_of_year=month_of_year,
                day_of_week=day_of_week,
            ),
            "options": {"queue": "maintenance"},
        }
    }


def create_celery_app(config: Optional[ShelfwiseConfig] = None) -> Celery:
    """Create and configure the Celery application."""
    if config is None:
        try:
            config = get_config()
        except ConfigError as exc:
            logger.warning(f"Falling back to default Celery settings: {exc.message}")
            config = ShelfwiseConfig()

    app = Celery("shelfwise", broker=config.celery.broker, backend=config.celery.result_backend)
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_default_queue="maintenance",
        task_routes={SWEEP_TASK_NAME: {"queue": "maintenance"}},
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        beat_schedule=build_beat_schedule(config),
    )
    return app


def get_celery_app() -> Celery:
    """Get or create the Celery app singleton."""
    global _celery_app
    if _celery_app is None:
        _celery_app = create_celery_app()
    return _celery_app


def run_grant_sweep(session_factory=None) -> int:
    """Delete expired grants now. Initialises the store from config when needed."""
    from shelfwise.db.session import get_session_factory, init_db_from_config
    from shelfwise.security.grants import GrantService

    if session_factory is None:
        try:
            session_factory = get_session_factory()
        except RuntimeError:
            session_factory = init_db_from_config(get_config())
    return GrantService(session_factory).sweep_expired()


celery_app = get_celery_app()


@celery_app.task(name=SWEEP_TASK_NAME)
def sweep_expired_grants() -> Dict[str, Any]:
    """Celery Beat task: remove grants whose expiry has passed."""
    removed = run_grant_sweep()
    logger.info(f"Scheduled grant sweep removed {removed} grant(s)")
    return {"removed": removed}
