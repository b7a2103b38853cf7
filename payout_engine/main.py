import asyncio
import json
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from functools import partial

from aiohttp import web
import aiohttp_cors

from .config import BOT_ENABLED, WEBAPP_HOST, WEBAPP_PORT
from .db import init_db, close_db
from .engine import PayoutEngine, engine as default_engine
from .exceptions import (
    BelowMinimumPayoutError,
    ConcurrentLedgerUpdateError,
    ConfigurationError,
    DuplicateRecognitionError,
    EarningsError,
    GatewayError,
    InsufficientBalanceError,
    InvalidPayoutAmountError,
    InvalidRefundError,
    InvalidStateTransitionError,
    LedgerFrozenError,
    LedgerInvariantViolation,
    NotFoundError,
    OrderNotSettledError,
)
from .gateway import PayoutResult
from .metrics import get_metrics_report
from .models import PayoutMethod, PayoutStatus
from .refunds import RefundEvent
from .reporting import (
    get_commission_history, get_earnings, get_flagged_ledgers, get_open_clawbacks, get_payout_history,
    get_payout_request, get_pending_payouts, get_pending_requests, get_platform_payout_summary,
    serialize_payout
)
from .security import webhook_security_middleware, start_security_tasks
from .settlement import PaidOrder
from .subscription import get_subscription_status
from .tasks import periodic_task_runner

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (NotFoundError, 404),
    (LedgerInvariantViolation, 500),
    (LedgerFrozenError, 423),
    (InvalidStateTransitionError, 409),
    (DuplicateRecognitionError, 409),
    (ConcurrentLedgerUpdateError, 409),
    (BelowMinimumPayoutError, 400),
    (InsufficientBalanceError, 400),
    (InvalidPayoutAmountError, 400),
    (InvalidRefundError, 400),
    (ConfigurationError, 422),
    (OrderNotSettledError, 422),
    (GatewayError, 502),
]


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


json_dumps = partial(json.dumps, default=_json_default)


def success(data=None, status=200):
    return web.json_response({"status": "success", "data": data}, status=status, dumps=json_dumps)


def error(code: str, message: str, status: int = 400):
    return web.json_response({"status": "error", "code": code, "message": message}, status=status)


def status_for(exc: EarningsError) -> int:
    for exc_type, status in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status
    return 400


@web.middleware
async def error_middleware(request, handler):
    """Map engine errors to the JSON error envelope."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except EarningsError as e:
        status = status_for(e)
        if status >= 500:
            logger.error(f"{request.method} {request.path} failed: {e.code}: {e.message}")
        else:
            logger.warning(f"{request.method} {request.path} rejected: {e.code}: {e.message}")
        return error(e.code, e.message, status)
    except ValueError as e:
        logger.warning(f"{request.method} {request.path} invalid request: {e}")
        return error("invalid_request", str(e), 400)


def _engine(request) -> PayoutEngine:
    return request.app["engine"]


def _int_param(request, name: str) -> int:
    try:
        return int(request.match_info[name])
    except ValueError:
        raise ValueError(f"{name} must be an integer")


async def _json_body(request) -> dict:
    if not request.can_read_body:
        return {}
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


async def _signed_payload(request) -> dict:
    """Read a gateway webhook body after verifying its X-Signature."""
    body = await request.read()
    signature = request.headers.get("X-Signature")
    if not _engine(request).gateway.verify_webhook_signature(body, signature):
        logger.warning(f"Invalid webhook signature on {request.path} from {request.remote}")
        raise web.HTTPUnauthorized(
            text=json.dumps({"status": "error", "code": "invalid_signature", "message": "Invalid signature"}),
            content_type="application/json",
        )
    data = json.loads(body or b"{}")
    if not isinstance(data, dict):
        raise ValueError("Webhook payload must be a JSON object")
    return data


def serialize_transaction(transaction) -> dict:
    return {
        "id": transaction.id,
        "line_item_id": transaction.line_item_id,
        "vendor_id": transaction.vendor_id,
        "payment_mode": transaction.payment_mode,
        "commission_rate": transaction.commission_rate,
        "original_amount": transaction.original_amount,
        "platform_commission": transaction.platform_commission,
        "vendor_commission": transaction.vendor_commission,
        "currency": transaction.currency,
        "status": transaction.status,
    }


# Gateway webhooks

async def handle_order_paid(request):
    order = PaidOrder.from_payload(await _signed_payload(request))
    transactions = await _engine(request).settle_order(order)
    return success({"order_id": order.order_id, "transactions": [serialize_transaction(t) for t in transactions]})


async def handle_refund_confirmed(request):
    event = RefundEvent.from_payload(await _signed_payload(request))
    adjustment = await _engine(request).apply_refund_event(event)
    return success({
        "id": adjustment.id,
        "refund_event_id": adjustment.refund_event_id,
        "refund_amount": adjustment.refund_amount,
        "vendor_reduction": adjustment.vendor_reduction,
        "from_pending": adjustment.from_pending,
        "clawback_amount": adjustment.clawback_amount,
    })


async def handle_payout_result(request):
    result = PayoutResult.from_payload(await _signed_payload(request))
    payout = await _engine(request).handle_payout_result(result)
    return success(serialize_payout(payout))


# Vendor endpoints

async def create_payout_request(request):
    vendor_id = _int_param(request, "vendor_id")
    data = await _json_body(request)
    method = PayoutMethod(data["method"]) if data.get("method") else None
    payout = await _engine(request).request_payout(vendor_id, data.get("amount"), method)
    return success(serialize_payout(payout), status=201)


async def payout_detail(request):
    return success(await get_payout_request(_int_param(request, "request_id")))


async def cancel_payout(request):
    request_id = _int_param(request, "request_id")
    data = await _json_body(request)
    payout = await _engine(request).cancel_payout_request(request_id, data.get("reason"))
    return success(serialize_payout(payout))


async def vendor_earnings(request):
    return success(await get_earnings(_int_param(request, "vendor_id"), _engine(request).ledger))


async def vendor_pending_payouts(request):
    return success(await get_pending_requests(_int_param(request, "vendor_id")))


async def vendor_payout_history(request):
    status = request.query.get("status")
    return success(await get_payout_history(
        _int_param(request, "vendor_id"),
        page=int(request.query.get("page", 1)),
        limit=int(request.query.get("limit", 10)),
        status=PayoutStatus(status) if status else None,
    ))


async def vendor_commissions(request):
    start_date = request.query.get("start_date")
    end_date = request.query.get("end_date")
    return success(await get_commission_history(
        _int_param(request, "vendor_id"),
        page=int(request.query.get("page", 1)),
        limit=int(request.query.get("limit", 10)),
        start_date=datetime.fromisoformat(start_date) if start_date else None,
        end_date=datetime.fromisoformat(end_date) if end_date else None,
    ))


async def vendor_clawbacks(request):
    return success(await get_open_clawbacks(_int_param(request, "vendor_id")))


async def vendor_subscription(request):
    engine = _engine(request)
    return success(await get_subscription_status(
        _int_param(request, "vendor_id"), grace_period_days=engine.config.grace_period_days
    ))


# Admin endpoints

async def admin_approve_payout(request):
    payout = await _engine(request).approve_payout(_int_param(request, "request_id"))
    return success(serialize_payout(payout))


async def admin_reject_payout(request):
    data = await _json_body(request)
    reason = data.get("reason")
    if not reason:
        raise ValueError("A rejection reason is required")
    payout = await _engine(request).reject_payout(_int_param(request, "request_id"), reason)
    return success(serialize_payout(payout))


async def admin_pending_payouts(request):
    return success(await get_pending_payouts())


async def admin_summary(request):
    return success(await get_platform_payout_summary())


async def admin_flagged_ledgers(request):
    return success(await get_flagged_ledgers())


async def admin_unfreeze_ledger(request):
    ledger = await _engine(request).unfreeze_ledger(_int_param(request, "vendor_id"))
    return success({"vendor_id": ledger.vendor_id, "is_frozen": ledger.is_frozen})


async def admin_offset_clawback(request):
    data = await _json_body(request)
    return success(await _engine(request).offset_clawback(_int_param(request, "vendor_id"), data.get("amount")))


async def admin_audit_ledger(request):
    return success(await _engine(request).audit_ledger(_int_param(request, "vendor_id")))


async def admin_metrics(request):
    start_date = request.query.get("start_date")
    end_date = request.query.get("end_date")
    return success(await get_metrics_report(
        start_date=datetime.fromisoformat(start_date) if start_date else None,
        end_date=datetime.fromisoformat(end_date) if end_date else None,
    ))


async def health_check(request):
    """Simple health check endpoint for monitoring"""
    return web.json_response({"status": "ok"})


async def on_startup(app):
    """Execute startup tasks"""
    await init_db()
    app["security_task"] = await start_security_tasks()


async def on_cleanup(app):
    """Execute shutdown tasks"""
    task = app.get("security_task")
    if task:
        task.cancel()
    await close_db()


def create_app(engine: PayoutEngine = None, manage_db: bool = True) -> web.Application:
    """
    Build the web application.

    Args:
        engine: Engine serving the requests (defaults to the shared instance)
        manage_db: Open and close the database with the application lifecycle
    """
    app = web.Application(middlewares=[error_middleware, webhook_security_middleware])
    app["engine"] = engine or default_engine

    cors = aiohttp_cors.setup(app, defaults={
        "*": aiohttp_cors.ResourceOptions(
            allow_credentials=True,
            expose_headers="*",
            allow_headers="*",
            max_age=3600,
            allow_methods=["GET", "POST", "DELETE"]
        )
    })

    routes = [
        ("POST", "/webhooks/order-paid", handle_order_paid),
        ("POST", "/webhooks/refund-confirmed", handle_refund_confirmed),
        ("POST", "/webhooks/payout-result", handle_payout_result),
        ("POST", "/vendors/{vendor_id}/payouts", create_payout_request),
        ("GET", "/payouts/{request_id}", payout_detail),
        ("DELETE", "/payouts/{request_id}", cancel_payout),
        ("GET", "/vendors/{vendor_id}/earnings", vendor_earnings),
        ("GET", "/vendors/{vendor_id}/payouts/pending", vendor_pending_payouts),
        ("GET", "/vendors/{vendor_id}/payouts/history", vendor_payout_history),
        ("GET", "/vendors/{vendor_id}/commissions", vendor_commissions),
        ("GET", "/vendors/{vendor_id}/subscription", vendor_subscription),
        ("GET", "/vendors/{vendor_id}/clawbacks", vendor_clawbacks),
        ("POST", "/admin/payouts/{request_id}/approve", admin_approve_payout),
        ("POST", "/admin/payouts/{request_id}/reject", admin_reject_payout),
        ("GET", "/admin/payouts/pending", admin_pending_payouts),
        ("GET", "/admin/summary", admin_summary),
        ("GET", "/admin/ledgers/flagged", admin_flagged_ledgers),
        ("POST", "/admin/vendors/{vendor_id}/unfreeze", admin_unfreeze_ledger),
        ("POST", "/admin/vendors/{vendor_id}/clawback-offset", admin_offset_clawback),
        ("GET", "/admin/vendors/{vendor_id}/audit", admin_audit_ledger),
        ("GET", "/admin/metrics", admin_metrics),
        ("GET", "/health", health_check),
    ]
    for method, path, handler in routes:
        cors.add(app.router.add_route(method, path, handler))

    if manage_db:
        app.on_startup.append(on_startup)
        app.on_cleanup.append(on_cleanup)
    return app


async def main():
    """Run the HTTP API and, when enabled, the Telegram bot"""
    app = create_app()
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=WEBAPP_HOST, port=int(WEBAPP_PORT))
    await site.start()
    logger.info(f"Payout API listening on {WEBAPP_HOST}:{WEBAPP_PORT}")
    tasks_runner = asyncio.create_task(periodic_task_runner())

    try:
        if BOT_ENABLED:
            from .bot import dp, bot
            logger.info("Starting bot in polling mode")
            await dp.start_polling(bot)
        else:
            while True:
                await asyncio.sleep(3600)
    finally:
        tasks_runner.cancel()
        await runner.cleanup()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Payout engine stopped!")
