"""Hourly sweep that cancels pending orders left unpaid for more than 24 hours.

Each qualifying transaction is cancelled (only while it is still pending)
and its owner gets an ``order_expired`` email. A failure on one
transaction is logged and counted; the sweep moves on to the next one.
Only a failure of the initial query fails the job.
"""

import logging
from typing import Any

from indexnow_worker.db.repositories import hours_ago, utcnow_iso
from indexnow_worker.jobs.schemas import AutoCancelJob, EmailTemplate, validate_payload
from indexnow_worker.lib.json_logger import job_logger
from indexnow_worker.lib.timeouts import run_with_timeout
from indexnow_worker.queue.config import QUEUE_AUTO_CANCEL
from indexnow_worker.queue.job_queue import Job
from indexnow_worker.queue.registry import QueueRegistry
from .base import WorkerContext, sweep_lock

logger = logging.getLogger(__name__)

CANCEL_REASON = "Automatically cancelled: payment not received within 24 hours"


def _expired_order_email(transaction: dict[str, Any], expired_at: str, base_url: str) -> dict[str, Any]:
    return {
        "customerName": transaction.get("customer_name") or "Customer",
        "orderId": transaction.get("order_id") or transaction["id"],
        "packageName": transaction.get("package_name") or "",
        "billingPeriod": transaction.get("billing_period") or "",
        "amount": transaction.get("gross_amount"),
        "status": "expired",
        "expiredDate": expired_at,
        "subscribeUrl": f"{base_url.rstrip('/')}/dashboard/settings/plans-billing",
    }


async def process_auto_cancel(job: Job, ctx: WorkerContext) -> dict[str, Any]:
    validate_payload(AutoCancelJob, job.data)
    log = job_logger(job.id, job.name, job.queue, job.attempts_made)

    async with sweep_lock(ctx, QUEUE_AUTO_CANCEL) as acquired:
        if not acquired:
            return {"skipped": True, "successCount": 0, "errorCount": 0, "totalFound": 0}

        cutoff = hours_ago(ctx.settings.auto_cancel_expiry_hours).isoformat()
        transactions = await ctx.transactions.find_expired_pending(cutoff, ctx.settings.auto_cancel_batch_size)
        # Never trust the store to honour the limit
        transactions = transactions[: ctx.settings.auto_cancel_batch_size]

        success_count = 0
        error_count = 0
        skipped = 0
        for transaction in transactions:
            transaction_id = transaction["id"]
            try:
                cancelled = await ctx.transactions.cancel_if_pending(transaction_id, CANCEL_REASON)
                if not cancelled:
                    skipped += 1
                    log.info(f"Transaction {transaction_id} left pending meanwhile, not cancelled")
                    continue

                cancelled_at = utcnow_iso()
                recipient = transaction.get("user_email")
                if recipient:
                    await run_with_timeout(
                        ctx.email_service.send_email(
                            recipient,
                            f"Order {transaction.get('order_id') or transaction_id} has expired",
                            EmailTemplate.ORDER_EXPIRED.value,
                            _expired_order_email(transaction, cancelled_at, ctx.settings.public_base_url),
                        ),
                        ctx.timeout,
                        "email.order_expired",
                    )
                success_count += 1
            except Exception as e:
                error_count += 1
                log.error(
                    f"Auto-cancel failed for transaction {transaction_id}: {e}",
                    extra={"transaction_id": transaction_id, "error_code": e.__class__.__name__},
                )

        result = {
            "successCount": success_count,
            "errorCount": error_count,
            "totalFound": len(transactions),
        }
        if skipped:
            result["skippedCount"] = skipped
        log.info(
            f"Auto-cancel sweep: {success_count} cancelled, {error_count} errors of {len(transactions)} found",
            extra={"status": "completed"},
        )
        return result


def initialize_auto_cancel_worker(registry: QueueRegistry, ctx: WorkerContext):
    async def processor(job: Job) -> dict[str, Any]:
        return await process_auto_cancel(job, ctx)

    return registry.register_worker(QUEUE_AUTO_CANCEL, processor, concurrency=1)
