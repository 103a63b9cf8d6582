"""
Pytest fixtures for marketcore backend tests.

Provides test database setup, user/product factories, and in-memory
stand-ins for the bank gateway and the notifier.
"""

import itertools

import pytest

from marketcore import create_app
from marketcore.errors import ConflictError, ValidationError
from marketcore.extensions import db
from marketcore.models import Product, ProductVariant, User
from marketcore.models.accounts import ROLE_CUSTOMER, ROLE_SALES_MANAGER, ROLE_SELLER
from marketcore.models.catalog import DELIVERY_SELLER
from marketcore.services import order_service
from marketcore.services.bank_gateway import RESULT_COMPLETED, DocumentStatus, TransferResult


SELLER_IBAN = "GE29NB0000000101904917"
MANAGER_IBAN = "GE60BG0000000123456789"
MANAGER_REF_CODE = "SM_TESTCODE"


class FakeGateway:
    """
    Bank gateway stand-in.

    transfer_results is a queue of result codes (0/1) or exceptions consumed
    by transfer_to_seller; an empty queue completes immediately. statuses maps
    document keys to a status letter, a DocumentStatus, or an exception.
    """

    def __init__(self):
        self.transfer_results = []
        self.transfers = []
        self.statuses = {}
        self.status_calls = []
        self.otp_requests = []
        self.signed = []
        self.authenticated = False
        self._keys = itertools.count(1001)

    def transfer_to_seller(self, request):
        self.transfers.append(request)
        outcome = self.transfer_results.pop(0) if self.transfer_results else RESULT_COMPLETED
        if isinstance(outcome, Exception):
            raise outcome
        key = next(self._keys)
        return TransferResult(document_id=f"uid-{key}", document_key=str(key), result_code=outcome)

    def get_document_status(self, document_key):
        self.status_calls.append(str(document_key))
        status = self.statuses.get(str(document_key), "A")
        if isinstance(status, Exception):
            raise status
        if isinstance(status, DocumentStatus):
            return status
        return DocumentStatus(document_key=str(document_key), status=status, result_code=None)

    def request_otp(self, document_key):
        self.otp_requests.append(str(document_key))

    def sign_document(self, document_key, otp):
        if not otp:
            raise ValidationError("OTP is required")
        status = self.get_document_status(document_key)
        if status.status != "A":
            raise ConflictError(
                f"Document cannot be signed. Current status: {status.status}",
                details={"document_key": str(document_key), "status": status.status},
            )
        self.signed.append((str(document_key), otp))
        self.statuses[str(document_key)] = "P"
        return True

    def is_authenticated(self):
        return self.authenticated


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def names(self):
        return [name for name, _ in self.sent]

    def send_order_confirmation(self, order):
        self.sent.append(("send_order_confirmation", (order.id,)))

    def send_seller_order(self, order, seller_id):
        self.sent.append(("send_seller_order", (order.id, seller_id)))

    def send_order_delivered(self, order):
        self.sent.append(("send_order_delivered", (order.id,)))

    def send_admin_status(self, subject, message):
        self.sent.append(("send_admin_status", (subject, message)))

    def send_withdrawal_requested(self, transaction):
        self.sent.append(("send_withdrawal_requested", (transaction.id,)))

    def send_withdrawal_completed(self, transaction):
        self.sent.append(("send_withdrawal_completed", (transaction.id,)))

    def send_withdrawal_failed(self, transaction, reason):
        self.sent.append(("send_withdrawal_failed", (transaction.id, reason)))


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOG_LEVEL': 'WARNING',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function', autouse=True)
def bank(app):
    """Replace the bank gateway so no test reaches the network."""
    fake = FakeGateway()
    original = app.extensions["bank_gateway"]
    app.extensions["bank_gateway"] = fake
    yield fake
    app.extensions["bank_gateway"] = original


@pytest.fixture(scope='function', autouse=True)
def notifier(app):
    recorder = RecordingNotifier()
    original = app.extensions["notifier"]
    app.extensions["notifier"] = recorder
    yield recorder
    app.extensions["notifier"] = original


@pytest.fixture(scope='function')
def make_user(db_session):
    counter = itertools.count(1)

    def _make(role=ROLE_CUSTOMER, **fields):
        n = next(counter)
        fields.setdefault("email", f"{role}{n}@test.local")
        fields.setdefault("name", f"{role.title()} {n}")
        user = User(role=role, **fields)
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture(scope='function')
def seller(make_user):
    return make_user(
        ROLE_SELLER,
        account_number=SELLER_IBAN,
        identification_number="01001000001",
    )


@pytest.fixture(scope='function')
def manager(make_user):
    """Sales manager with a referral code and payout details."""
    return make_user(
        ROLE_SALES_MANAGER,
        sales_ref_code=MANAGER_REF_CODE,
        account_number=MANAGER_IBAN,
        identification_number="01001000002",
    )


@pytest.fixture(scope='function')
def buyer(make_user):
    return make_user(ROLE_CUSTOMER)


@pytest.fixture(scope='function')
def make_product(db_session):
    def _make(seller, price_cents=10000, stock=5, delivery_type=DELIVERY_SELLER, variants=None, name="Test Product"):
        product = Product(
            seller_id=seller.id,
            name=name,
            price_cents=price_cents,
            count_in_stock=stock,
            delivery_type=delivery_type,
        )
        for spec in variants or []:
            product.variants.append(ProductVariant(
                size=spec.get("size", ""),
                color=spec.get("color", ""),
                age_group=spec.get("age_group", ""),
                stock=spec["stock"],
            ))
        product.sync_flat_stock()
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def place_order(db_session):
    """Create a single-line pending order for a registered buyer."""
    def _place(buyer, product, qty=1, **kwargs):
        item = {"product_id": product.id, "qty": qty}
        for attr in ("size", "color", "age_group"):
            if attr in kwargs:
                item[attr] = kwargs.pop(attr)
        return order_service.create_order([item], user_id=buyer.id, **kwargs)

    return _place


@pytest.fixture(scope='function')
def delivered_order(place_order):
    """Create, pay and deliver a single-line order."""
    def _deliver(buyer, product, qty=1, **kwargs):
        order = place_order(buyer, product, qty, **kwargs)
        order_service.confirm_payment(order.id, payment_result={"id": f"pay-{order.id}", "status": "COMPLETED"})
        return order_service.mark_delivered(order.id)

    return _deliver
