from celery import shared_task
from celery.utils.log import get_task_logger
from django.core.cache import cache
from functools import wraps
from opinions import queue

logger = get_task_logger(__name__)


def task_lock(timeout=60 * 10):
    """
    Decorator that prevents a task from being executed concurrently.
    Uses Django's cache to create a lock based on the task name and arguments.

    Args:
        timeout: Lock timeout in seconds (default: 10 minutes)
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            task_name = func.__name__
            lock_args = [str(arg) for arg in args if isinstance(arg, (int, str))]
            lock_kwargs = [
                f"{key}:{value}"
                for key, value in kwargs.items()
                if isinstance(value, (int, str))
            ]

            lock_key = f"task_lock:{task_name}:{':'.join(lock_args)}:{':'.join(lock_kwargs)}"

            acquired = cache.add(lock_key, "locked", timeout)

            if acquired:
                try:
                    return func(*args, **kwargs)
                finally:
                    cache.delete(lock_key)
            else:
                logger.info(f"Task {task_name} with args {args} and kwargs {kwargs} is already running. Skipping.")
                return None
        return wrapper
    return decorator


@shared_task
@task_lock(timeout=60 * 15)  # one queue drain at a time
def process_clustering_queue(max_jobs=None):
    """
    Drain pending clustering jobs. Scheduled by Celery beat.

    Returns:
        dict: processed/successful/failed counts and error strings
    """
    summary = queue.process_queue(max_jobs)
    if summary.failed:
        logger.warning(f"Clustering queue run had {summary.failed} failures: {summary.errors}")
    return {
        'processed': summary.processed,
        'successful': summary.successful,
        'failed': summary.failed,
        'errors': summary.errors,
    }


@shared_task
@task_lock()
def cleanup_clustering_queue(days_to_keep=None):
    """Delete old completed/failed clustering jobs."""
    deleted = queue.cleanup_old_jobs(days_to_keep)
    return {'deleted': deleted}


@shared_task
def enqueue_clustering(poll_id):
    """
    Queue a poll for clustering, e.g. when it reaches a vote milestone.

    Returns:
        bool: True if newly queued
    """
    queued = queue.enqueue_job(poll_id)
    logger.info(f"Enqueue clustering for poll {poll_id}: {'queued' if queued else 'already queued'}")
    return queued
