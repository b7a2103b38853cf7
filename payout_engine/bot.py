import logging
from decimal import Decimal

from aiogram import Dispatcher
from aiogram.filters.command import Command
from aiogram.types import Message

from .alerts import admin_alerts
from .config import ADMIN_CHAT_ID, RATE_LIMIT_GENERAL, RATE_LIMIT_PAYOUT
from .engine import engine
from .exceptions import EarningsError
from .models import VendorAccount
from .money import to_decimal
from .reporting import get_earnings, get_flagged_ledgers, get_payout_history, get_pending_payouts, get_pending_requests
from .security import rate_limit

logger = logging.getLogger(__name__)

# The alert channel and the command bot share one client
bot = admin_alerts.bot
dp = Dispatcher()

TEXT = {
    "welcome": "Welcome to the vendor payouts bot. Use /help to see the available commands.",
    "help": (
        "Vendor commands:\n"
        "/earnings - Show your balances\n"
        "/request_payout [amount] - Request a payout (full balance if no amount)\n"
        "/my_payouts - Show your payout requests\n"
        "/cancel_payout ID - Cancel a pending payout request"
    ),
    "admin_help": (
        "\n\nAdmin commands:\n"
        "/pending_payouts - Payout requests waiting for approval\n"
        "/approve_payout ID - Approve and dispatch a payout\n"
        "/reject_payout ID REASON - Reject a payout request\n"
        "/flagged_ledgers - Frozen ledgers\n"
        "/unfreeze_ledger VENDOR_ID - Re-open a reconciled ledger"
    ),
    "not_vendor": "This command is only available to registered vendors.",
    "not_admin": "You don't have admin rights to run this command.",
    "earnings": (
        "💰 Your earnings ({currency})\n\n"
        "Available: {pending_balance}\n"
        "In processing: {in_processing}\n"
        "Paid out: {total_paid_out}\n"
        "Total earned: {total_earned}"
    ),
    "clawback": "\nOwed to the platform: {clawback_owed}",
    "frozen": "\n\n⚠️ Your ledger is under review; payouts are paused.",
    "payout_requested": "✅ Payout request #{id} created for {amount} {currency}. You will be notified once it is processed.",
    "payout_cancelled": "Payout request #{id} cancelled.",
    "no_payouts": "You have no payout requests yet.",
    "no_pending_payouts": "No payout requests are waiting for approval.",
    "pending_payout_line": "#{id} {vendor_name} (vendor {vendor_id}): {amount} {currency}",
    "payout_approved": "Payout #{id} approved: {amount} {currency}, status {status}.",
    "payout_rejected": "Payout #{id} rejected: {reason}",
    "no_flagged_ledgers": "No frozen ledgers.",
    "flagged_ledger_line": "Vendor {vendor_id} ({vendor_name}): {frozen_reason}",
    "ledger_unfrozen": "Ledger of vendor {vendor_id} unfrozen.",
    "invalid_amount": "Please specify the amount as a number, e.g. /request_payout 150.00",
    "usage_cancel": "Usage: /cancel_payout ID",
    "usage_approve": "Usage: /approve_payout ID",
    "usage_reject": "Usage: /reject_payout ID REASON",
    "usage_unfreeze": "Usage: /unfreeze_ledger VENDOR_ID",
    "invalid_id": "Invalid ID format. Use a number.",
    "error": "❌ {message}",
}


def is_admin(message: Message) -> bool:
    return bool(ADMIN_CHAT_ID) and str(message.from_user.id) == ADMIN_CHAT_ID


async def get_vendor(message: Message):
    return await VendorAccount.filter(telegram_id=message.from_user.id).first()


def format_amount(amount) -> str:
    return "full balance" if amount is None else f"{Decimal(amount):,.2f}"


@dp.message(Command("start"))
@rate_limit(limit=RATE_LIMIT_GENERAL, period=60)
async def cmd_start(message: Message):
    await message.answer(TEXT["welcome"])


@dp.message(Command("help"))
@rate_limit(limit=RATE_LIMIT_GENERAL, period=60)
async def cmd_help(message: Message):
    text = TEXT["help"]
    if is_admin(message):
        text += TEXT["admin_help"]
    await message.answer(text)


@dp.message(Command("earnings"))
@rate_limit(limit=RATE_LIMIT_GENERAL, period=60)
async def cmd_earnings(message: Message):
    """Show the vendor's balances"""
    vendor = await get_vendor(message)
    if not vendor:
        await message.answer(TEXT["not_vendor"])
        return

    earnings = await get_earnings(vendor.id, engine.ledger)
    text = TEXT["earnings"].format(
        currency=earnings["currency"],
        pending_balance=format_amount(earnings["pending_balance"]),
        in_processing=format_amount(earnings["in_processing"]),
        total_paid_out=format_amount(earnings["total_paid_out"]),
        total_earned=format_amount(earnings["total_earned"]),
    )
    if earnings["clawback_owed"] > 0:
        text += TEXT["clawback"].format(clawback_owed=format_amount(earnings["clawback_owed"]))
    if earnings["is_frozen"]:
        text += TEXT["frozen"]
    await message.answer(text)


@dp.message(Command("request_payout"))
@rate_limit(limit=RATE_LIMIT_PAYOUT, period=60, key="request_payout_command")
async def cmd_request_payout(message: Message):
    """Request a payout of an amount or of the whole pending balance"""
    vendor = await get_vendor(message)
    if not vendor:
        await message.answer(TEXT["not_vendor"])
        return

    args = message.text.split()
    amount = None
    if len(args) > 1:
        try:
            amount = to_decimal(args[1].replace(",", "."))
        except ValueError:
            await message.answer(TEXT["invalid_amount"])
            return

    try:
        request = await engine.request_payout(vendor.id, amount)
    except EarningsError as e:
        await message.answer(TEXT["error"].format(message=e.message))
        return

    await message.answer(TEXT["payout_requested"].format(
        id=request.id, amount=format_amount(request.amount), currency=request.currency
    ))


@dp.message(Command("my_payouts"))
@rate_limit(limit=RATE_LIMIT_GENERAL, period=60)
async def cmd_my_payouts(message: Message):
    vendor = await get_vendor(message)
    if not vendor:
        await message.answer(TEXT["not_vendor"])
        return

    history = await get_payout_history(vendor.id, page=1, limit=10)
    if not history["payouts"]:
        await message.answer(TEXT["no_payouts"])
        return

    lines = []
    for payout in history["payouts"]:
        lines.append(f"#{payout['id']} {format_amount(payout['approved_amount'] or payout['amount'])} "
                     f"{payout['currency']} - {payout['status']}")
    open_count = len(await get_pending_requests(vendor.id))
    await message.answer(f"Your payout requests ({open_count} open):\n\n" + "\n".join(lines))


@dp.message(Command("cancel_payout"))
@rate_limit(limit=RATE_LIMIT_GENERAL, period=60)
async def cmd_cancel_payout(message: Message):
    vendor = await get_vendor(message)
    if not vendor:
        await message.answer(TEXT["not_vendor"])
        return

    args = message.text.split()
    if len(args) != 2:
        await message.answer(TEXT["usage_cancel"])
        return

    try:
        request_id = int(args[1])
        request = await engine.cancel_payout_request(request_id, "Cancelled by vendor", vendor_id=vendor.id)
    except ValueError:
        await message.answer(TEXT["invalid_id"])
        return
    except EarningsError as e:
        await message.answer(TEXT["error"].format(message=e.message))
        return

    await message.answer(TEXT["payout_cancelled"].format(id=request.id))


@dp.message(Command("pending_payouts"))
async def cmd_pending_payouts(message: Message):
    """Admin approval queue"""
    if not is_admin(message):
        await message.answer(TEXT["not_admin"])
        return

    payouts = await get_pending_payouts()
    if not payouts:
        await message.answer(TEXT["no_pending_payouts"])
        return

    lines = [
        TEXT["pending_payout_line"].format(
            id=p["id"], vendor_name=p["vendor_name"], vendor_id=p["vendor_id"],
            amount=format_amount(p["amount"]), currency=p["currency"]
        )
        for p in payouts
    ]
    await message.answer("Pending payout requests:\n\n" + "\n".join(lines))


@dp.message(Command("approve_payout"))
async def cmd_approve_payout(message: Message):
    if not is_admin(message):
        await message.answer(TEXT["not_admin"])
        return

    args = message.text.split()
    if len(args) != 2:
        await message.answer(TEXT["usage_approve"])
        return

    try:
        request = await engine.approve_payout(int(args[1]))
    except ValueError:
        await message.answer(TEXT["invalid_id"])
        return
    except EarningsError as e:
        await message.answer(TEXT["error"].format(message=e.message))
        return

    await message.answer(TEXT["payout_approved"].format(
        id=request.id, amount=format_amount(request.approved_amount),
        currency=request.currency, status=request.status.value
    ))


@dp.message(Command("reject_payout"))
async def cmd_reject_payout(message: Message):
    if not is_admin(message):
        await message.answer(TEXT["not_admin"])
        return

    args = message.text.split(maxsplit=2)
    if len(args) != 3:
        await message.answer(TEXT["usage_reject"])
        return

    try:
        request = await engine.reject_payout(int(args[1]), args[2])
    except ValueError:
        await message.answer(TEXT["invalid_id"])
        return
    except EarningsError as e:
        await message.answer(TEXT["error"].format(message=e.message))
        return

    await message.answer(TEXT["payout_rejected"].format(id=request.id, reason=request.rejection_reason))


@dp.message(Command("flagged_ledgers"))
async def cmd_flagged_ledgers(message: Message):
    if not is_admin(message):
        await message.answer(TEXT["not_admin"])
        return

    ledgers = await get_flagged_ledgers()
    if not ledgers:
        await message.answer(TEXT["no_flagged_ledgers"])
        return

    await message.answer("\n".join(
        TEXT["flagged_ledger_line"].format(
            vendor_id=row["vendor_id"], vendor_name=row["vendor_name"], frozen_reason=row["frozen_reason"]
        )
        for row in ledgers
    ))


@dp.message(Command("unfreeze_ledger"))
async def cmd_unfreeze_ledger(message: Message):
    if not is_admin(message):
        await message.answer(TEXT["not_admin"])
        return

    args = message.text.split()
    if len(args) != 2:
        await message.answer(TEXT["usage_unfreeze"])
        return

    try:
        vendor_id = int(args[1])
        await engine.unfreeze_ledger(vendor_id)
    except ValueError:
        await message.answer(TEXT["invalid_id"])
        return
    except EarningsError as e:
        await message.answer(TEXT["error"].format(message=e.message))
        return

    await message.answer(TEXT["ledger_unfrozen"].format(vendor_id=vendor_id))
