from __future__ import annotations

from ..extensions import db
from marketcore.time_utils import to_utc_z

LEDGER_SELLER = "SELLER"
LEDGER_COMMISSION = "COMMISSION"

KIND_EARNING = "EARNING"
KIND_COMMISSION_CREDIT = "COMMISSION_CREDIT"
KIND_COMMISSION_REVERSAL = "COMMISSION_REVERSAL"
KIND_WITHDRAWAL_PENDING = "WITHDRAWAL_PENDING"
KIND_WITHDRAWAL_COMPLETED = "WITHDRAWAL_COMPLETED"
KIND_WITHDRAWAL_FAILED = "WITHDRAWAL_FAILED"

EARNING_KINDS = (KIND_EARNING, KIND_COMMISSION_CREDIT, KIND_COMMISSION_REVERSAL)
WITHDRAWAL_KINDS = (KIND_WITHDRAWAL_PENDING, KIND_WITHDRAWAL_COMPLETED, KIND_WITHDRAWAL_FAILED)

COMMISSION_PENDING = "PENDING"
COMMISSION_APPROVED = "APPROVED"
COMMISSION_PAID = "PAID"
COMMISSION_CANCELLED = "CANCELLED"


class BalanceAccount(db.Model):
    """
    Cached running balance for one owner on one ledger.

    The cached fields are derived state: the BalanceTransaction rows are the
    source of truth and ledger_service.recompute_account rebuilds them.
    """
    __tablename__ = "balance_accounts"
    __table_args__ = (
        db.UniqueConstraint("owner_id", "ledger", name="uq_balance_accounts_owner_ledger"),
        db.CheckConstraint("pending_cents >= 0", name="ck_balance_accounts_pending_nonnegative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    ledger = db.Column(db.String(16), nullable=False)

    available_cents = db.Column(db.Integer, nullable=False, default=0)
    pending_cents = db.Column(db.Integer, nullable=False, default=0)
    total_earnings_cents = db.Column(db.Integer, nullable=False, default=0)
    total_withdrawn_cents = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "ledger": self.ledger,
            "available_cents": self.available_cents,
            "pending_cents": self.pending_cents,
            "total_earnings_cents": self.total_earnings_cents,
            "total_withdrawn_cents": self.total_withdrawn_cents,
            "updated_at": to_utc_z(self.updated_at) if self.updated_at else None,
        }


class BalanceTransaction(db.Model):
    """
    Append-only ledger row.

    amount_cents is signed: credits positive, withdrawals and reversals negative.
    Only kind, bank document fields, failure_reason and description change after insert.
    """
    __tablename__ = "balance_transactions"
    __table_args__ = (
        # One settlement row per order line, and one per order-level commission event
        db.UniqueConstraint("order_line_id", "kind", name="uq_balance_tx_line_kind"),
        db.Index(
            "uq_balance_tx_order_ledger_kind", "order_id", "ledger", "kind",
            unique=True,
            sqlite_where=db.text("ledger = 'COMMISSION'"),
            postgresql_where=db.text("ledger = 'COMMISSION'"),
        ),
        db.Index("ix_balance_tx_order", "order_id"),
        db.Index("ix_balance_tx_account_created", "account_id", "created_at"),
        db.Index("ix_balance_tx_kind", "kind"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("balance_accounts.id"), nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    ledger = db.Column(db.String(16), nullable=False)

    # Seller earnings carry both and key on the line; commission rows key on
    # the order. Withdrawal rows set neither.
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    order_line_id = db.Column(db.Integer, db.ForeignKey("order_lines.id"), nullable=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(32), nullable=False)
    description = db.Column(db.String(512), nullable=True)

    # Fee breakdown (EARNING / COMMISSION rows)
    gross_cents = db.Column(db.Integer, nullable=True)
    platform_fee_cents = db.Column(db.Integer, nullable=True)
    delivery_fee_cents = db.Column(db.Integer, nullable=True)
    rate_bps = db.Column(db.Integer, nullable=True)

    # Bank transfer tracking (withdrawal rows)
    bank_document_key = db.Column(db.String(64), nullable=True, index=True)
    bank_document_id = db.Column(db.String(64), nullable=True)
    failure_reason = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    account = db.relationship("BalanceAccount", backref=db.backref("transactions", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "owner_id": self.owner_id,
            "ledger": self.ledger,
            "order_id": self.order_id,
            "order_line_id": self.order_line_id,
            "amount_cents": self.amount_cents,
            "kind": self.kind,
            "description": self.description,
            "gross_cents": self.gross_cents,
            "platform_fee_cents": self.platform_fee_cents,
            "delivery_fee_cents": self.delivery_fee_cents,
            "rate_bps": self.rate_bps,
            "bank_document_key": self.bank_document_key,
            "bank_document_id": self.bank_document_id,
            "failure_reason": self.failure_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at) if self.updated_at else None,
        }


class Commission(db.Model):
    """
    Referral commission earned by a sales manager on one order.

    amount_cents is frozen at creation from the order total and the owner's rate.
    PENDING -> APPROVED (on delivery) -> PAID (consumed by a withdrawal);
    PENDING/APPROVED -> CANCELLED when the order is cancelled.
    """
    __tablename__ = "commissions"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_commissions_order"),
        db.Index("ix_commissions_owner_status_created", "owner_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    guest_email = db.Column(db.String(255), nullable=True)
    sales_ref_code = db.Column(db.String(32), nullable=False)

    order_total_cents = db.Column(db.Integer, nullable=False)
    rate_bps = db.Column(db.Integer, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=COMMISSION_PENDING)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_by_transaction_id = db.Column(db.Integer, db.ForeignKey("balance_transactions.id"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "owner_id": self.owner_id,
            "customer_id": self.customer_id,
            "guest_email": self.guest_email,
            "sales_ref_code": self.sales_ref_code,
            "order_total_cents": self.order_total_cents,
            "rate_bps": self.rate_bps,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "paid_by_transaction_id": self.paid_by_transaction_id,
            "created_at": to_utc_z(self.created_at),
        }
