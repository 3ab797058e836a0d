"""
Celery application for content pipeline work.

Broker/backend: Redis (REDIS_URL env).
Default queue: pipeline.
"""
from celery import Celery

from reel_factory.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "reel_factory",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_time_limit=2 * 3600,       # 2 hours hard limit
    task_soft_time_limit=110 * 60,  # 1h50m soft limit
    task_default_queue="pipeline",
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # visibility_timeout MUST be > task_time_limit to prevent redelivery
    # of long-running tasks. 3h = 10800s > 2h = 7200s.
    broker_transport_options={"visibility_timeout": 3 * 3600},
)

celery_app.autodiscover_tasks(["reel_factory.worker"])
