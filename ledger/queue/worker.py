"""Background worker for document processing and periodization posting.

Run with: python -m ledger.queue.worker
Or: arq ledger.queue.tasks.WorkerSettings
"""

import logging

from arq import run_worker

from ledger.queue.tasks import WorkerSettings
from ledger.shared.config import Settings, get_settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def configure_worker(settings: Settings) -> type[WorkerSettings]:
    """Apply queue settings to the arq worker class.

    Args:
        settings: Application settings

    Returns:
        The configured WorkerSettings class
    """
    WorkerSettings.redis_settings = WorkerSettings.get_redis_settings()
    WorkerSettings.max_jobs = settings.queue_max_jobs
    WorkerSettings.job_timeout = settings.queue_job_timeout
    return WorkerSettings


def main() -> None:
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)

    logger.info(
        f"Starting {settings.service_name} worker "
        f"(redis: {settings.redis_url}, storage: {settings.storage_backend}, "
        f"max jobs: {settings.queue_max_jobs}, timeout: {settings.queue_job_timeout}s)"
    )
    run_worker(configure_worker(settings))  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
