import re

import pytest

from marketcore.errors import NotFoundError, ValidationError
from marketcore.models import BalanceAccount, BalanceTransaction, Commission
from marketcore.models.accounts import ROLE_CUSTOMER
from marketcore.models.ledger import (
    COMMISSION_APPROVED,
    COMMISSION_CANCELLED,
    COMMISSION_PAID,
    COMMISSION_PENDING,
    KIND_COMMISSION_CREDIT,
    KIND_COMMISSION_REVERSAL,
    KIND_WITHDRAWAL_COMPLETED,
    LEDGER_COMMISSION,
)
from marketcore.services import commission_service, order_service

MANAGER_REF_CODE = "SM_TESTCODE"


def _commission_account(db_session, owner_id):
    return db_session.query(BalanceAccount).filter_by(owner_id=owner_id, ledger=LEDGER_COMMISSION).one()


def _paid_referral(place_order, buyer, product, qty=1, ref_code=MANAGER_REF_CODE):
    order = place_order(buyer, product, qty, sales_ref_code=ref_code)
    order_service.confirm_payment(order.id)
    return order


def test_payment_records_pending_commission(db_session, seller, manager, buyer, make_product, place_order):
    product = make_product(seller, price_cents=10000)
    order = _paid_referral(place_order, buyer, product)

    commission = db_session.query(Commission).filter_by(order_id=order.id).one()
    assert commission.status == COMMISSION_PENDING
    assert commission.owner_id == manager.id
    assert commission.rate_bps == 300
    assert commission.order_total_cents == 10000
    assert commission.amount_cents == 300
    assert commission.customer_id == buyer.id


def test_commission_uses_owner_rate(db_session, seller, manager, buyer, make_product, place_order):
    commission_service.update_commission_rate(manager.id, 500)
    product = make_product(seller, price_cents=10000)
    order = _paid_referral(place_order, buyer, product)

    assert db_session.query(Commission).filter_by(order_id=order.id).one().amount_cents == 500


@pytest.mark.parametrize("ref_code", [None, "", "NOPE", "SM_UNKNOWN1"])
def test_no_commission_without_valid_code(db_session, seller, manager, buyer, make_product, place_order, ref_code):
    product = make_product(seller)
    _paid_referral(place_order, buyer, product, ref_code=ref_code)

    assert db_session.query(Commission).count() == 0


def test_no_commission_for_non_manager_code(db_session, seller, buyer, make_user, make_product, place_order):
    make_user(ROLE_CUSTOMER, sales_ref_code="SM_CUSTOMER")
    product = make_product(seller)
    _paid_referral(place_order, buyer, product, ref_code="SM_CUSTOMER")

    assert db_session.query(Commission).count() == 0


def test_process_commission_is_idempotent(db_session, seller, manager, buyer, make_product, place_order):
    product = make_product(seller)
    order = _paid_referral(place_order, buyer, product)

    again = commission_service.process_order_commission(order.id, MANAGER_REF_CODE)

    assert again.order_id == order.id
    assert db_session.query(Commission).count() == 1


def test_delivery_approves_and_credits_commission(db_session, seller, manager, buyer, make_product, delivered_order):
    product = make_product(seller, price_cents=10000)
    order = delivered_order(buyer, product, sales_ref_code=MANAGER_REF_CODE)

    commission = db_session.query(Commission).filter_by(order_id=order.id).one()
    assert commission.status == COMMISSION_APPROVED
    assert commission.approved_at is not None

    account = _commission_account(db_session, manager.id)
    assert account.available_cents == 300
    assert account.total_earnings_cents == 300

    credit = db_session.query(BalanceTransaction).filter_by(kind=KIND_COMMISSION_CREDIT).one()
    assert credit.order_id == order.id
    assert credit.order_line_id is None

    # A second approval is a no-op
    commission_service.approve_commission(order.id)
    assert _commission_account(db_session, manager.id).available_cents == 300


def test_cancel_pending_commission(db_session, seller, manager, buyer, make_product, place_order):
    product = make_product(seller)
    order = _paid_referral(place_order, buyer, product)

    commission = commission_service.cancel_commission(order.id)

    assert commission.status == COMMISSION_CANCELLED
    assert db_session.query(BalanceTransaction).filter_by(kind=KIND_COMMISSION_REVERSAL).count() == 0


def test_cancel_approved_commission_reverses_credit(db_session, seller, manager, buyer, make_product, delivered_order):
    product = make_product(seller, price_cents=10000)
    order = delivered_order(buyer, product, sales_ref_code=MANAGER_REF_CODE)

    commission = commission_service.cancel_commission(order.id)

    assert commission.status == COMMISSION_CANCELLED
    reversal = db_session.query(BalanceTransaction).filter_by(kind=KIND_COMMISSION_REVERSAL).one()
    assert reversal.amount_cents == -300
    account = _commission_account(db_session, manager.id)
    assert account.available_cents == 0
    assert account.total_earnings_cents == 0

    commission_service.cancel_commission(order.id)
    assert db_session.query(BalanceTransaction).filter_by(kind=KIND_COMMISSION_REVERSAL).count() == 1


def test_withdrawal_pays_commissions_oldest_first(db_session, seller, manager, buyer, make_product, delivered_order):
    product = make_product(seller, price_cents=10000, stock=10)
    first = delivered_order(buyer, product, qty=1, sales_ref_code=MANAGER_REF_CODE)   # 300
    second = delivered_order(buyer, product, qty=2, sales_ref_code=MANAGER_REF_CODE)  # 600
    third = make_product(seller, price_cents=5000)
    third = delivered_order(buyer, third, qty=1, sales_ref_code=MANAGER_REF_CODE)     # 150

    tx = commission_service.request_withdrawal(manager.id, 800)

    assert tx.kind == KIND_WITHDRAWAL_COMPLETED
    statuses = {
        c.order_id: (c.status, c.paid_by_transaction_id)
        for c in db_session.query(Commission).all()
    }
    assert statuses[first.id] == (COMMISSION_PAID, tx.id)
    assert statuses[second.id] == (COMMISSION_APPROVED, None)
    assert statuses[third.id] == (COMMISSION_PAID, tx.id)

    account = _commission_account(db_session, manager.id)
    assert account.available_cents == 250
    assert account.total_withdrawn_cents == 800


def test_commission_withdrawal_requires_manager(db_session, buyer):
    with pytest.raises(ValidationError):
        commission_service.request_withdrawal(buyer.id, 1000)
    with pytest.raises(NotFoundError):
        commission_service.request_withdrawal(999999, 1000)


def test_generate_ref_code(db_session, make_user):
    from marketcore.models.accounts import ROLE_SALES_MANAGER

    manager = make_user(ROLE_SALES_MANAGER)
    code = commission_service.generate_ref_code(manager.id)

    assert re.fullmatch(r"SM_[A-Z0-9]{8}", code)
    assert commission_service.generate_ref_code(manager.id) == code


def test_generate_ref_code_rejects_customers(db_session, buyer):
    with pytest.raises(ValidationError):
        commission_service.generate_ref_code(buyer.id)


def test_validate_ref_code(db_session, manager):
    assert commission_service.validate_ref_code(MANAGER_REF_CODE) == {"valid": True, "manager_name": manager.name}
    assert commission_service.validate_ref_code("SM_MISSING") == {"valid": False}
    assert commission_service.validate_ref_code("XX_TESTCODE") == {"valid": False}
    assert commission_service.validate_ref_code(None) == {"valid": False}


@pytest.mark.parametrize("rate", [-1, 10001, "300", None])
def test_update_commission_rate_validation(db_session, manager, rate):
    with pytest.raises(ValidationError):
        commission_service.update_commission_rate(manager.id, rate)


def test_stats_exclude_cancelled(db_session, seller, manager, buyer, make_product, place_order, delivered_order):
    product = make_product(seller, price_cents=10000, stock=10)
    delivered_order(buyer, product, sales_ref_code=MANAGER_REF_CODE)
    _paid_referral(place_order, buyer, product, qty=2)
    cancelled = _paid_referral(place_order, buyer, product, qty=3)
    commission_service.cancel_commission(cancelled.id)

    stats = commission_service.get_stats(manager.id)

    assert stats["total_orders"] == 2
    assert stats["approved_cents"] == 300
    assert stats["pending_cents"] == 600
    assert stats["paid_cents"] == 0
    assert stats["total_commissions_cents"] == 900
    assert stats["balance"]["available_cents"] == 300
