import itertools
import os
from decimal import Decimal
from unittest.mock import AsyncMock

# Ensure we're in testing mode before the package reads its configuration
os.environ["TESTING"] = "True"

import pytest
import pytest_asyncio

from payout_engine.accounts import create_vendor_account
from payout_engine.config import EngineConfig, get_current_time
from payout_engine.db import close_db, init_db_with_retry
from payout_engine.engine import PayoutEngine
from payout_engine.gateway import PaymentGateway
from payout_engine.models import PaymentMode
from payout_engine.settlement import OrderLine, PaidOrder


@pytest_asyncio.fixture(scope="function", autouse=True)
async def initialize_tests_db():
    """Fresh in-memory database for every test"""
    await init_db_with_retry("sqlite://:memory:", max_retries=1)
    yield
    await close_db()


@pytest.fixture
def mock_alerts():
    """Admin alert channel double"""
    return AsyncMock()


@pytest.fixture
def gateway():
    return PaymentGateway(enabled=True, webhook_secret="webhook_secret")


@pytest.fixture
def engine(gateway, mock_alerts):
    config = EngineConfig(
        default_commission_rate=Decimal("10"),
        minimum_payout_default=Decimal("100.00"),
        grace_period_days=7,
        rounding_mode="half_up",
        ledger_retry_attempts=3,
        payout_processing_sla_hours=72,
        default_currency="AED",
    )
    return PayoutEngine(config=config, gateway=gateway, alerts=mock_alerts)


@pytest_asyncio.fixture
async def commission_vendor():
    return await create_vendor_account(
        "Test Commission Vendor",
        commission_rate="10",
        currency="AED",
        minimum_payout="50.00",
        telegram_id=54321,
    )


@pytest_asyncio.fixture
async def subscription_vendor():
    return await create_vendor_account(
        "Test Subscription Vendor",
        payment_mode=PaymentMode.SUBSCRIPTION,
        subscription_fee="299.00",
        currency="AED",
        minimum_payout="50.00",
        telegram_id=54322,
    )


ORDER_IDS = itertools.count(1)


def paid_order(order_id, *lines, currency="AED", status="paid"):
    """Build a PaidOrder from (vendor_id, amount) pairs"""
    return PaidOrder(
        order_id=order_id,
        payment_status=status,
        currency=currency,
        paid_at=get_current_time(),
        lines=[OrderLine(vendor_id=vendor_id, amount=Decimal(str(amount))) for vendor_id, amount in lines],
    )


@pytest.fixture
def make_order():
    return paid_order


@pytest.fixture
def settle(engine):
    """Settle a single-line order for a vendor and return its commission transaction"""
    async def _settle(vendor, amount, order_id=None):
        order_id = order_id or f"ORD-{next(ORDER_IDS)}"
        transactions = await engine.settle_order(paid_order(order_id, (vendor.id, amount)))
        return transactions[0]
    return _settle


@pytest.fixture
def paid_out(engine):
    """Run a payout of ``amount`` through request, approval and a successful gateway callback"""
    async def _paid_out(vendor, amount):
        request = await engine.request_payout(vendor.id, Decimal(str(amount)))
        request = await engine.approve_payout(request.id)
        return await engine.confirm_payout_result(request.id, True, request.gateway_reference)
    return _paid_out
