"""Celery application for asynchronous import processing."""

import ssl

from celery import Celery

from app.core.config import get_settings
from app.utils.redis_client import normalize_redis_url

settings = get_settings()

broker_url = settings.celery_broker_url or settings.redis_url
backend_url = settings.celery_result_url or settings.redis_url


def _with_tls(url: str) -> tuple[str, bool]:
    """Upstash only accepts TLS; rediss:// URLs also need ssl_cert_reqs in the query."""
    url = normalize_redis_url(url)
    if not url.startswith("rediss://"):
        return url, False
    if "ssl_cert_reqs" not in url:
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}ssl_cert_reqs=none"
    return url, True


broker_url, broker_ssl = _with_tls(broker_url)
backend_url, backend_ssl = _with_tls(backend_url)
is_ssl = broker_ssl or backend_ssl

celery_app = Celery(
    "school_imports",
    broker=broker_url,
    backend=backend_url,
)

# SSL options must be in place before anything touches the result backend
if is_ssl:
    ssl_dict = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_app.conf.update(
        {
            "result_backend_transport_options": ssl_dict,
            "broker_transport_options": ssl_dict,
            "broker_use_ssl": ssl_dict,
            "result_backend_use_ssl": ssl_dict,
        }
    )

celery_app.autodiscover_tasks(["app.workers.tasks"])

# Explicit import so the task is registered even without autodiscovery
from app.workers.tasks import process_import  # noqa: E402,F401

celery_app.conf.task_routes = {
    "app.workers.tasks.process_import": {"queue": "imports"},
}
celery_app.conf.task_default_queue = "imports"

celery_app.conf.update(
    {
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
        "timezone": "UTC",
        "enable_utc": True,
        "task_acks_late": True,  # Acknowledge after task completion
        "task_reject_on_worker_lost": True,  # Re-queue if worker dies
        "worker_prefetch_multiplier": 1,  # One job per worker at a time
        "task_time_limit": 3600,
        "task_soft_time_limit": 3300,
        "result_expires": 86400,
        "broker_connection_retry_on_startup": True,
        "worker_hijack_root_logger": False,
        "result_backend_always_retry": True,
        "result_backend_max_retries": 3,
    }
)
