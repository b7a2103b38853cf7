"""
Operational alert channel: messages to the admin Telegram chat.
"""

import logging
from typing import Optional

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

from .config import ADMIN_CHAT_ID, BOT_ENABLED, BOT_TOKEN

logger = logging.getLogger(__name__)

TEXT = {
    "ledger_frozen": "🚨 Ledger of vendor {vendor_id} frozen\n\n{reason}\n\nReconcile, then /unfreeze_ledger {vendor_id}",
    "stale_payout": "⏳ Payout #{request_id} of vendor {vendor_id} is processing since {processed_at} and needs reconciliation",
    "payout_requested": "💸 Vendor {vendor_id} requested payout #{request_id}: {amount} {currency}\n\n/approve_payout {request_id}",
    "dispatch_failed": "⚠️ Payout #{request_id} of vendor {vendor_id} could not be dispatched: {reason}",
}


class AdminAlerts:
    """Sends alerts to ADMIN_CHAT_ID through the aiogram bot."""

    def __init__(self, bot: Optional[Bot] = None, chat_id: Optional[str] = ADMIN_CHAT_ID, enabled: bool = BOT_ENABLED):
        self._bot = bot
        self.chat_id = chat_id
        self.enabled = enabled

    @property
    def bot(self) -> Bot:
        if self._bot is None:
            self._bot = Bot(token=BOT_TOKEN)
        return self._bot

    async def send(self, text: str) -> bool:
        if not self.enabled or not self.chat_id:
            logger.warning(f"Admin alert not delivered (alerts disabled): {text}")
            return False
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=text)
            return True
        except TelegramAPIError as e:
            # The alert is also in the log; delivery failures must not mask the original error
            logger.error(f"Failed to deliver admin alert: {e}. Alert was: {text}")
            return False

    async def ledger_frozen(self, vendor_id: int, reason: str) -> bool:
        return await self.send(TEXT["ledger_frozen"].format(vendor_id=vendor_id, reason=reason))

    async def stale_payout(self, request) -> bool:
        return await self.send(TEXT["stale_payout"].format(
            request_id=request.id,
            vendor_id=request.vendor_id,
            processed_at=request.processed_at.isoformat() if request.processed_at else "unknown",
        ))

    async def payout_requested(self, request) -> bool:
        amount = request.amount if request.amount is not None else "full balance"
        return await self.send(TEXT["payout_requested"].format(
            request_id=request.id, vendor_id=request.vendor_id, amount=amount, currency=request.currency
        ))

    async def dispatch_failed(self, request, reason: str) -> bool:
        return await self.send(TEXT["dispatch_failed"].format(
            request_id=request.id, vendor_id=request.vendor_id, reason=reason
        ))


admin_alerts = AdminAlerts()
