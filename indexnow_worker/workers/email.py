"""Email worker: validate and hand off to the email capability."""

import logging
from typing import Any

from indexnow_worker.jobs.schemas import EmailJob, validate_payload
from indexnow_worker.lib.timeouts import run_with_timeout
from indexnow_worker.queue.config import QUEUE_EMAIL
from indexnow_worker.queue.job_queue import Job
from indexnow_worker.queue.registry import QueueRegistry
from .base import WorkerContext

logger = logging.getLogger(__name__)


async def process_email(job: Job, ctx: WorkerContext) -> dict[str, Any]:
    payload = validate_payload(EmailJob, job.data)
    delivery = await run_with_timeout(
        ctx.email_service.send_email(payload.to, payload.subject, payload.template.value, payload.data),
        ctx.timeout,
        "email.send",
    )
    return {"success": True, **delivery}


def initialize_email_worker(registry: QueueRegistry, ctx: WorkerContext):
    async def processor(job: Job) -> dict[str, Any]:
        return await process_email(job, ctx)

    return registry.register_worker(QUEUE_EMAIL, processor)
