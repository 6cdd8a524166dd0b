"""Payment-webhook worker: reconcile a gateway notification with its transaction."""

import logging
from typing import Any, Optional

from indexnow_worker.db.repositories import utcnow_iso
from indexnow_worker.errors import NotFoundError
from indexnow_worker.jobs.schemas import PaymentStatus, PaymentWebhookJob, validate_payload
from indexnow_worker.lib.json_logger import job_logger
from indexnow_worker.queue.config import QUEUE_PAYMENTS
from indexnow_worker.queue.job_queue import Job
from indexnow_worker.queue.registry import QueueRegistry
from .base import WorkerContext

logger = logging.getLogger(__name__)

# Gateway status -> transaction_status. Pending notifications change nothing.
STATUS_MAP: dict[PaymentStatus, Optional[str]] = {
    PaymentStatus.SETTLEMENT: "completed",
    PaymentStatus.EXPIRE: "cancelled",
    PaymentStatus.CANCEL: "cancelled",
    PaymentStatus.DENY: "failed",
    PaymentStatus.PENDING: None,
}


async def process_payment_webhook(job: Job, ctx: WorkerContext) -> dict[str, Any]:
    payload = validate_payload(PaymentWebhookJob, job.data)
    transaction = await ctx.transactions.get_by_order_id(payload.orderId)
    if not transaction:
        raise NotFoundError(f"No transaction for order {payload.orderId}")

    log = job_logger(job.id, job.name, job.queue, job.attempts_made).with_context(
        transaction_id=transaction["id"], user_id=transaction.get("user_id")
    )
    new_status = STATUS_MAP[payload.status]
    if new_status is None:
        log.info(f"Order {payload.orderId} still pending at the gateway")
        return {"orderId": payload.orderId, "status": transaction.get("transaction_status"), "updated": False}

    now = utcnow_iso()
    updated = await ctx.transactions.apply_gateway_status(
        transaction["id"],
        {
            "transaction_status": new_status,
            "gateway_transaction_id": payload.transactionId,
            "payment_method": payload.paymentType,
            "processed_at": now,
            "updated_at": now,
        },
    )
    if updated:
        log.info(f"Order {payload.orderId} is now {new_status}", extra={"status": new_status})
    else:
        # Redelivered webhook or the sweep got there first
        log.info(f"Order {payload.orderId} already {transaction.get('transaction_status')}, leaving it")

    return {
        "orderId": payload.orderId,
        "status": new_status if updated else transaction.get("transaction_status"),
        "updated": updated,
    }


def initialize_payment_worker(registry: QueueRegistry, ctx: WorkerContext):
    async def processor(job: Job) -> dict[str, Any]:
        return await process_payment_webhook(job, ctx)

    return registry.register_worker(QUEUE_PAYMENTS, processor)
