from tortoise import BaseDBAsyncClient


async def upgrade(db: BaseDBAsyncClient) -> str:
    return """
        CREATE TABLE IF NOT EXISTS "vendor_accounts" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "name" VARCHAR(255) NOT NULL,
    "telegram_id" BIGINT UNIQUE,
    "payment_mode" VARCHAR(12) NOT NULL DEFAULT 'commission',
    "commission_rate" DECIMAL(5,2),
    "subscription_fee" DECIMAL(14,2),
    "billing_currency" VARCHAR(3),
    "currency" VARCHAR(3) NOT NULL DEFAULT 'AED',
    "minimum_payout" DECIMAL(14,2),
    "preferred_payout_method" VARCHAR(13) NOT NULL DEFAULT 'bank_transfer',
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);
COMMENT ON COLUMN "vendor_accounts"."payment_mode" IS 'COMMISSION: commission\nSUBSCRIPTION: subscription';
COMMENT ON COLUMN "vendor_accounts"."preferred_payout_method" IS 'BANK_TRANSFER: bank_transfer\nSTRIPE: stripe\nPAYPAL: paypal\nMANUAL: manual';
COMMENT ON TABLE "vendor_accounts" IS 'Vendor billing profile. Owned by the platform, read-only for the engine.';
CREATE TABLE IF NOT EXISTS "settled_line_items" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "order_id" VARCHAR(64) NOT NULL,
    "line_index" INT NOT NULL,
    "original_amount" DECIMAL(14,2) NOT NULL,
    "currency" VARCHAR(3) NOT NULL,
    "settled_at" TIMESTAMPTZ NOT NULL,
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "vendor_id" INT NOT NULL REFERENCES "vendor_accounts" ("id") ON DELETE CASCADE,
    CONSTRAINT "uid_settled_lin_order_i_5b1f0e" UNIQUE ("order_id", "line_index")
);
COMMENT ON TABLE "settled_line_items" IS 'One paid order line attributed to a vendor. Never mutated.';
CREATE TABLE IF NOT EXISTS "commission_transactions" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "payment_mode" VARCHAR(12) NOT NULL,
    "commission_rate" DECIMAL(5,2) NOT NULL,
    "original_amount" DECIMAL(14,2) NOT NULL,
    "platform_commission" DECIMAL(14,2) NOT NULL,
    "vendor_commission" DECIMAL(14,2) NOT NULL,
    "currency" VARCHAR(3) NOT NULL,
    "status" VARCHAR(8) NOT NULL DEFAULT 'pending',
    "refunded_amount" DECIMAL(14,2) NOT NULL DEFAULT 0,
    "vendor_refunded" DECIMAL(14,2) NOT NULL DEFAULT 0,
    "reserved_amount" DECIMAL(14,2) NOT NULL DEFAULT 0,
    "paid_out_amount" DECIMAL(14,2) NOT NULL DEFAULT 0,
    "calculated_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "paid_at" TIMESTAMPTZ,
    "line_item_id" INT NOT NULL UNIQUE REFERENCES "settled_line_items" ("id") ON DELETE CASCADE,
    "vendor_id" INT NOT NULL REFERENCES "vendor_accounts" ("id") ON DELETE CASCADE
);
COMMENT ON COLUMN "commission_transactions"."payment_mode" IS 'COMMISSION: commission\nSUBSCRIPTION: subscription';
COMMENT ON COLUMN "commission_transactions"."status" IS 'PENDING: pending\nAPPROVED: approved\nPAID: paid';
COMMENT ON TABLE "commission_transactions" IS 'Recognition of one settled line item (created exactly once).';
CREATE INDEX IF NOT EXISTS "idx_commission_vendor_status" ON "commission_transactions" ("vendor_id", "status");
CREATE INDEX IF NOT EXISTS "idx_commission_calculated_at" ON "commission_transactions" ("calculated_at");
CREATE TABLE IF NOT EXISTS "payout_requests" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "amount" DECIMAL(14,2),
    "approved_amount" DECIMAL(14,2),
    "currency" VARCHAR(3) NOT NULL DEFAULT 'AED',
    "status" VARCHAR(10) NOT NULL DEFAULT 'pending',
    "method" VARCHAR(13) NOT NULL DEFAULT 'bank_transfer',
    "total_orders" INT NOT NULL DEFAULT 0,
    "gateway_reference" VARCHAR(255),
    "failure_reason" TEXT,
    "rejection_reason" TEXT,
    "needs_reconciliation" BOOL NOT NULL DEFAULT False,
    "requested_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "approved_at" TIMESTAMPTZ,
    "processed_at" TIMESTAMPTZ,
    "resolved_at" TIMESTAMPTZ,
    "vendor_id" INT NOT NULL REFERENCES "vendor_accounts" ("id") ON DELETE CASCADE
);
COMMENT ON COLUMN "payout_requests"."status" IS 'PENDING: pending\nAPPROVED: approved\nPROCESSING: processing\nCOMPLETED: completed\nFAILED: failed\nCANCELLED: cancelled';
COMMENT ON COLUMN "payout_requests"."method" IS 'BANK_TRANSFER: bank_transfer\nSTRIPE: stripe\nPAYPAL: paypal\nMANUAL: manual';
COMMENT ON TABLE "payout_requests" IS 'Payout request tracking for vendors.';
CREATE INDEX IF NOT EXISTS "idx_payout_requests_vendor_status" ON "payout_requests" ("vendor_id", "status");
CREATE TABLE IF NOT EXISTS "payout_allocations" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "amount" DECIMAL(14,2) NOT NULL,
    "released" BOOL NOT NULL DEFAULT False,
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "commission_transaction_id" INT NOT NULL REFERENCES "commission_transactions" ("id") ON DELETE CASCADE,
    "payout_id" INT NOT NULL REFERENCES "payout_requests" ("id") ON DELETE CASCADE
);
COMMENT ON TABLE "payout_allocations" IS 'Portion of a commission transaction covered by a payout.';
CREATE TABLE IF NOT EXISTS "vendor_ledgers" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "currency" VARCHAR(3) NOT NULL,
    "total_earned" DECIMAL(14,2) NOT NULL DEFAULT 0,
    "pending_balance" DECIMAL(14,2) NOT NULL DEFAULT 0,
    "in_processing" DECIMAL(14,2) NOT NULL DEFAULT 0,
    "total_paid_out" DECIMAL(14,2) NOT NULL DEFAULT 0,
    "clawback_owed" DECIMAL(14,2) NOT NULL DEFAULT 0,
    "version" INT NOT NULL DEFAULT 0,
    "is_frozen" BOOL NOT NULL DEFAULT False,
    "frozen_reason" TEXT,
    "frozen_at" TIMESTAMPTZ,
    "updated_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "vendor_id" INT NOT NULL UNIQUE REFERENCES "vendor_accounts" ("id") ON DELETE CASCADE
);
COMMENT ON TABLE "vendor_ledgers" IS 'Running balance per vendor. Mutated only through payout_engine.ledger.';
CREATE TABLE IF NOT EXISTS "ledger_entries" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "entry_type" VARCHAR(15) NOT NULL,
    "amount" DECIMAL(14,2) NOT NULL,
    "reference" VARCHAR(255),
    "total_earned" DECIMAL(14,2) NOT NULL,
    "pending_balance" DECIMAL(14,2) NOT NULL,
    "in_processing" DECIMAL(14,2) NOT NULL,
    "total_paid_out" DECIMAL(14,2) NOT NULL,
    "clawback_owed" DECIMAL(14,2) NOT NULL,
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "ledger_id" INT NOT NULL REFERENCES "vendor_ledgers" ("id") ON DELETE CASCADE
);
COMMENT ON COLUMN "ledger_entries"."entry_type" IS 'CREDIT: credit\nRESERVE: reserve\nCONFIRM_PAYOUT: confirm_payout\nRELEASE: release\nREVERSE: reverse\nCLAWBACK_OFFSET: clawback_offset';
COMMENT ON TABLE "ledger_entries" IS 'Append-only journal of ledger mutations.';
CREATE INDEX IF NOT EXISTS "idx_ledger_entries_ledger" ON "ledger_entries" ("ledger_id", "id");
CREATE TABLE IF NOT EXISTS "vendor_subscriptions" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "fee" DECIMAL(14,2) NOT NULL,
    "currency" VARCHAR(3) NOT NULL,
    "status" VARCHAR(12) NOT NULL DEFAULT 'expired',
    "paid_until" TIMESTAMPTZ,
    "started_at" TIMESTAMPTZ,
    "suspended_at" TIMESTAMPTZ,
    "suspension_reason" TEXT,
    "updated_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "vendor_id" INT NOT NULL UNIQUE REFERENCES "vendor_accounts" ("id") ON DELETE CASCADE
);
COMMENT ON COLUMN "vendor_subscriptions"."status" IS 'ACTIVE: active\nGRACE_PERIOD: grace_period\nEXPIRED: expired\nSUSPENDED: suspended';
COMMENT ON TABLE "vendor_subscriptions" IS 'Recurring platform fee state for subscription-mode vendors.';
CREATE TABLE IF NOT EXISTS "subscription_payments" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "period_start" TIMESTAMPTZ NOT NULL,
    "period_end" TIMESTAMPTZ NOT NULL,
    "amount" DECIMAL(14,2) NOT NULL,
    "currency" VARCHAR(3) NOT NULL,
    "status" VARCHAR(7) NOT NULL,
    "payment_date" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "transaction_id" VARCHAR(255),
    "subscription_id" INT NOT NULL REFERENCES "vendor_subscriptions" ("id") ON DELETE CASCADE
);
COMMENT ON COLUMN "subscription_payments"."status" IS 'PAID: paid\nFAILED: failed\nPENDING: pending';
COMMENT ON TABLE "subscription_payments" IS 'One billing cycle payment record.';
CREATE TABLE IF NOT EXISTS "refund_adjustments" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "refund_event_id" VARCHAR(128) NOT NULL,
    "refund_amount" DECIMAL(14,2) NOT NULL,
    "vendor_reduction" DECIMAL(14,2) NOT NULL,
    "from_pending" DECIMAL(14,2) NOT NULL,
    "clawback_amount" DECIMAL(14,2) NOT NULL,
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "line_item_id" INT NOT NULL REFERENCES "settled_line_items" ("id") ON DELETE CASCADE,
    "vendor_id" INT NOT NULL REFERENCES "vendor_accounts" ("id") ON DELETE CASCADE,
    CONSTRAINT "uid_refund_adju_line_it_8c2d41" UNIQUE ("line_item_id", "refund_event_id")
);
COMMENT ON TABLE "refund_adjustments" IS 'Negative adjustment created by a gateway-confirmed refund.';
CREATE TABLE IF NOT EXISTS "clawbacks" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "amount" DECIMAL(14,2) NOT NULL,
    "recovered_amount" DECIMAL(14,2) NOT NULL DEFAULT 0,
    "status" VARCHAR(9) NOT NULL DEFAULT 'open',
    "created_at" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
    "recovered_at" TIMESTAMPTZ,
    "line_item_id" INT NOT NULL REFERENCES "settled_line_items" ("id") ON DELETE CASCADE,
    "refund_id" INT NOT NULL UNIQUE REFERENCES "refund_adjustments" ("id") ON DELETE CASCADE,
    "vendor_id" INT NOT NULL REFERENCES "vendor_accounts" ("id") ON DELETE CASCADE
);
COMMENT ON COLUMN "clawbacks"."status" IS 'OPEN: open\nRECOVERED: recovered';
COMMENT ON TABLE "clawbacks" IS 'Receivable against a vendor for refunds of already paid-out earnings.';
CREATE INDEX IF NOT EXISTS "idx_clawbacks_vendor_status" ON "clawbacks" ("vendor_id", "status");
CREATE TABLE IF NOT EXISTS "metrics" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "metric_type" VARCHAR(26) NOT NULL,
    "value" DOUBLE PRECISION NOT NULL DEFAULT 1,
    "entity_id" INT,
    "user_id" BIGINT,
    "metadata" JSONB,
    "timestamp" TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
);
COMMENT ON COLUMN "metrics"."metric_type" IS 'LINE_ITEM_SETTLED: line_item_settled\nEARNINGS_RECOGNIZED: earnings_recognized\nREFUND_APPLIED: refund_applied\nCLAWBACK_RECORDED: clawback_recorded\nPAYOUT_REQUESTED: payout_requested\nPAYOUT_APPROVED: payout_approved\nPAYOUT_COMPLETED: payout_completed\nPAYOUT_FAILED: payout_failed\nPAYOUT_CANCELLED: payout_cancelled\nSUBSCRIPTION_PAYMENT: subscription_payment\nLEDGER_INVARIANT_VIOLATION: ledger_invariant_violation';
COMMENT ON TABLE "metrics" IS 'Metrics model for tracking key performance indicators.';
CREATE TABLE IF NOT EXISTS "aerich" (
    "id" SERIAL NOT NULL PRIMARY KEY,
    "version" VARCHAR(255) NOT NULL,
    "app" VARCHAR(100) NOT NULL,
    "content" JSONB NOT NULL
);"""


async def downgrade(db: BaseDBAsyncClient) -> str:
    return """
        DROP TABLE IF EXISTS "metrics";
        DROP TABLE IF EXISTS "clawbacks";
        DROP TABLE IF EXISTS "refund_adjustments";
        DROP TABLE IF EXISTS "subscription_payments";
        DROP TABLE IF EXISTS "vendor_subscriptions";
        DROP TABLE IF EXISTS "ledger_entries";
        DROP TABLE IF EXISTS "vendor_ledgers";
        DROP TABLE IF EXISTS "payout_allocations";
        DROP TABLE IF EXISTS "payout_requests";
        DROP TABLE IF EXISTS "commission_transactions";
        DROP TABLE IF EXISTS "settled_line_items";
        DROP TABLE IF EXISTS "vendor_accounts";
    """
