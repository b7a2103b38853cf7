import asyncio
import logging

from .config import get_current_time
from .engine import engine
from .exceptions import EarningsError
from .models import PaymentMode, VendorAccount, VendorLedger

logger = logging.getLogger(__name__)


async def flag_stale_payouts():
    """
    Flag payouts stuck in processing past the SLA for manual reconciliation.
    They are never failed automatically.
    """
    try:
        stale = await engine.flag_stale_payouts()
        if stale:
            logger.info(f"Flagged {len(stale)} stale payouts for reconciliation")
        else:
            logger.info("No stale payouts found")
    except Exception as e:
        logger.error(f"Error in flag_stale_payouts task: {e}")


async def refresh_subscription_statuses():
    """
    Persist the current status of every subscription-mode vendor so the
    catalog hides events of expired vendors.
    """
    try:
        now = get_current_time()
        vendors = await VendorAccount.filter(payment_mode=PaymentMode.SUBSCRIPTION)
        for vendor in vendors:
            try:
                await engine.refresh_subscription(vendor.id, now)
            except EarningsError as e:
                logger.error(f"Could not refresh subscription of vendor {vendor.id}: {e.message}")
        logger.info(f"Refreshed subscription status of {len(vendors)} vendors")
    except Exception as e:
        logger.error(f"Error in refresh_subscription_statuses task: {e}")


async def audit_ledgers():
    """Replay every ledger journal and freeze ledgers whose balances disagree with it."""
    try:
        mismatched = []
        for ledger in await VendorLedger.filter(is_frozen=False):
            report = await engine.audit_ledger(ledger.vendor_id)
            if not report["ok"]:
                mismatched.append(report)
                logger.error(f"Ledger audit failed for vendor {ledger.vendor_id}: {report['mismatches']}")
                await engine.freeze_ledger(
                    ledger.vendor_id,
                    f"Journal audit mismatch: {', '.join(report['mismatches'])}",
                    mismatches=report["mismatches"],
                )
        if not mismatched:
            logger.info("All ledgers match their journals")
        return mismatched
    except Exception as e:
        logger.error(f"Error in audit_ledgers task: {e}")
        return []


async def periodic_task_runner(interval=600):
    """Run scheduled tasks periodically"""
    while True:
        for name, task in scheduled_tasks.items():
            logger.info(f"Running scheduled task {name}")
            await task()
        await asyncio.sleep(interval)


# Dictionary of scheduled tasks for easy access
scheduled_tasks = {
    "flag_stale_payouts": flag_stale_payouts,
    "refresh_subscription_statuses": refresh_subscription_statuses,
    "audit_ledgers": audit_ledgers,
}
