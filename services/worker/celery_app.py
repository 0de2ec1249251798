"""
Celery application configuration for background tasks
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init, worker_process_shutdown
import structlog

from packages.common.config import get_settings
from packages.common.logging_config import configure_logging

logger = structlog.get_logger()
settings = get_settings()

# Create Celery app
app = Celery(
    "expense_categorization_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=600,  # 10 minutes hard limit
    task_soft_time_limit=540,  # 9 minutes soft limit

    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour
    result_extended=True,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=50,

    # Task routing
    task_routes={
        "services.worker.tasks.pattern_maintenance.*": {"queue": "learning"},
    },

    # Beat schedule (periodic tasks)
    beat_schedule={
        "pattern-maintenance": {
            "task": "services.worker.tasks.pattern_maintenance.run_maintenance",
            "schedule": crontab(hour=3, minute=0),  # 3 AM daily: decay + retire
            "options": {"queue": "learning"},
        },
        "warm-pattern-cache": {
            "task": "services.worker.tasks.pattern_maintenance.warm_cache",
            "schedule": float(settings.pattern_cache_memory_ttl_seconds),
            "options": {"queue": "learning"},
        },
    },
)

# Import tasks explicitly to register them
from services.worker.tasks import pattern_maintenance


@worker_process_init.connect
def init_worker(**kwargs):
    """Initialize worker process"""
    configure_logging(settings.log_level, json_logs=settings.log_json)
    logger.info("celery_worker_starting",
                concurrency=kwargs.get("concurrency", "unknown"))


@worker_process_shutdown.connect
def shutdown_worker(**kwargs):
    """Clean up worker process"""
    logger.info("celery_worker_shutting_down")


if __name__ == "__main__":
    app.start()
