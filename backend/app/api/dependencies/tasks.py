"""Work-queue dependency, overridable in tests."""

from app.services.batch_scheduler import Dispatcher, enqueue_import


def get_dispatcher() -> Dispatcher:
    """FastAPI dependency returning the function that enqueues import jobs."""
    return enqueue_import
