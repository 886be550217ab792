"""Celery tasks for PolyEdge.

This module configures Celery and registers all periodic tasks.
"""

from celery import Celery
from celery.schedules import crontab

from polyedge.config import get_settings

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "polyedge",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["polyedge.tasks.trading"],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task behavior
    task_track_started=True,
    task_time_limit=300,  # 5 minute hard limit
    task_soft_time_limit=270,
    # Result expiration
    result_expires=3600,  # 1 hour
    # Worker settings
    worker_prefetch_multiplier=1,
    # Sweeps must not overlap; one worker process processes models in order
    worker_concurrency=1,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Settlement + aggregation sweep - every 5 minutes
    "run-sweep": {
        "task": "polyedge.tasks.trading.run_sweep_task",
        "schedule": 300.0,  # 5 minutes
        "options": {"expires": 280},
    },
    # Pattern memory recompute - every hour at :10
    "analyze-patterns": {
        "task": "polyedge.tasks.trading.analyze_patterns_task",
        "schedule": crontab(minute=10),
        "options": {"expires": 3540},
    },
    # Learning cycle for all models - every hour at :00
    "run-improvement-cycle": {
        "task": "polyedge.tasks.trading.run_improvement_cycle_task",
        "schedule": crontab(minute=0),
        "options": {"expires": 3540},
    },
    # Catch up on trades settled without an analysis - every 15 minutes
    "analyze-pending-trades": {
        "task": "polyedge.tasks.trading.analyze_pending_trades_task",
        "schedule": 900.0,  # 15 minutes
        "options": {"expires": 840},
    },
}
