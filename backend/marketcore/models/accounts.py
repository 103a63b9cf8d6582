from __future__ import annotations

from ..extensions import db
from marketcore.time_utils import to_utc_z

ROLE_CUSTOMER = "customer"
ROLE_SELLER = "seller"
ROLE_SALES_MANAGER = "sales_manager"
ROLE_ADMIN = "admin"

VALID_ROLES = [ROLE_CUSTOMER, ROLE_SELLER, ROLE_SALES_MANAGER, ROLE_ADMIN]


class User(db.Model):
    """
    Marketplace participant: buyer, seller, commission-earning sales manager or admin.

    Authentication lives elsewhere; the core only needs identity, payout
    details, and referral attributes.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.Index("ix_users_role", "role"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=True)
    role = db.Column(db.String(32), nullable=False, default=ROLE_CUSTOMER)

    # Payout details (bank transfer beneficiary)
    account_number = db.Column(db.String(64), nullable=True)
    identification_number = db.Column(db.String(32), nullable=True)
    beneficiary_bank_code = db.Column(db.String(16), nullable=True)

    # Referral attribution; commission rate overrides the configured default
    sales_ref_code = db.Column(db.String(32), nullable=True, unique=True)
    commission_rate_bps = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} role={self.role}>"

    @property
    def display_name(self) -> str:
        return (self.name or "").strip() or self.email

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "account_number": self.account_number,
            "beneficiary_bank_code": self.beneficiary_bank_code,
            "sales_ref_code": self.sales_ref_code,
            "commission_rate_bps": self.commission_rate_bps,
            "created_at": to_utc_z(self.created_at),
        }
