"""
Celery Application Configuration for HRFlow

This module configures Celery for background run advancement.

Architecture:
- Message Broker: Redis
- Result Backend: Redis (or CELERY_RESULT_BACKEND)
- Workers: advance runs, dispatch trigger events, sweep the action queue
- Beat: periodic queue sweep and overdue-task escalation

Key Features:
- Acknowledge after execution (a crashed worker's message is redelivered;
  every task is idempotent)
- JSON serialization (safe, debuggable)
- Separate queue for periodic maintenance
"""

import os
import logging
from celery import Celery
from kombu import Queue, Exchange
from ..core.config import Settings
from ..core.logging_config import setup_logging

# Initialize structured logging for Celery workers
setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "true").lower() == "true",  # Default to JSON in workers
    log_file=os.getenv("LOG_FILE", None)
)

logger = logging.getLogger(__name__)

settings = Settings.from_env()

# Create Celery app
celery_app = Celery("hrflow", include=["hrflow.workers.tasks"])

# Celery Configuration
celery_app.conf.update(
    # ============================================================================
    # BROKER & BACKEND
    # ============================================================================
    broker_url=settings.redis_url,
    result_backend=settings.result_backend or settings.redis_url,

    # Broker connection retry on startup
    broker_connection_retry_on_startup=True,
    broker_connection_retry=True,
    broker_connection_max_retries=10,

    # ============================================================================
    # SERIALIZATION
    # ============================================================================
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # ============================================================================
    # TIMEZONE
    # ============================================================================
    timezone="UTC",
    enable_utc=True,

    # ============================================================================
    # TASK EXECUTION
    # ============================================================================
    task_track_started=True,

    # Acknowledge tasks AFTER execution (ensures no lost advancement requests)
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    worker_prefetch_multiplier=1,

    # Task timeouts
    task_time_limit=300,  # Hard limit: 5 minutes
    task_soft_time_limit=270,

    # ============================================================================
    # RESULTS
    # ============================================================================
    result_expires=86400,  # 24 hours in seconds

    # ============================================================================
    # TASK ROUTING
    # ============================================================================
    task_default_queue="runs",
    task_default_exchange="runs",
    task_default_routing_key="run.advance",

    task_queues=(
        # Run advancement and event dispatch
        Queue(
            "runs",
            Exchange("runs"),
            routing_key="run.advance",
        ),
        # Periodic sweeps (queue entries, overdue tasks, stalled runs)
        Queue(
            "maintenance",
            Exchange("maintenance"),
            routing_key="maintenance.sweep",
        ),
    ),

    task_routes={
        "advance_run_task": {"queue": "runs", "routing_key": "run.advance"},
        "dispatch_event_task": {"queue": "runs", "routing_key": "run.advance"},
        "sweep_action_queue_task": {"queue": "maintenance", "routing_key": "maintenance.sweep"},
        "escalate_overdue_task": {"queue": "maintenance", "routing_key": "maintenance.sweep"},
    },

    # ============================================================================
    # WORKER CONFIGURATION
    # ============================================================================
    worker_pool="prefork",
    worker_concurrency=2,
    worker_max_tasks_per_child=1000,

    # ============================================================================
    # MONITORING & LOGGING
    # ============================================================================
    worker_send_task_events=True,
    task_send_sent_event=True,

    worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
    worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
)

# ============================================================================
# BEAT SCHEDULE (Periodic Tasks)
# ============================================================================
celery_app.conf.beat_schedule = {
    "sweep-action-queue": {
        "task": "sweep_action_queue_task",
        "schedule": float(settings.sweep_interval_seconds),
    },
    "escalate-overdue-tasks": {
        "task": "escalate_overdue_task",
        "schedule": float(settings.overdue_interval_seconds),
    },
}

logger.info("Celery app configured successfully")
