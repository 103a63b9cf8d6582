"""
Bank gateway tests against an in-process mock of the banking API.
"""

import base64
import json
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from marketcore.errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from marketcore.services.bank_gateway import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_PENDING,
    PROFILE_DEFAULT,
    PROFILE_WITHDRAWAL,
    RESULT_CODE_MESSAGES,
    BankGateway,
    DocumentStatus,
    TransferRequest,
    format_account_number,
    validate_account_number,
)
from marketcore.time_utils import utcnow

TOKEN_URL = "https://auth.bank.test/token"
API_URL = "https://api.bank.test/api"


class FakeBank:
    """Routes requests the way the banking API would and records them."""

    def __init__(self):
        self.requests = []
        self.token_status = 200
        self.transfer_response = [{"ResultCode": 1, "UniqueKey": 555, "UniqueId": "uid-555", "Match": 100}]
        self.transfer_status = 200
        self.statuses = {"555": "A"}
        self.sign_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url == TOKEN_URL:
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            form = parse_qs(request.content.decode())
            grant = form["grant_type"][0]
            return httpx.Response(200, json={
                "access_token": f"token-{grant}-{len(self.requests)}",
                "refresh_token": "refresh-1",
                "expires_in": 300,
            })

        path = request.url.path
        if path == "/api/documents/domestic":
            return httpx.Response(self.transfer_status, json=self.transfer_response)
        if path.startswith("/api/documents/statuses/"):
            keys = path.rsplit("/", 1)[1].split(",")
            return httpx.Response(200, json=[
                {"UniqueKey": int(k), "Status": self.statuses[k], "ResultCode": 0}
                for k in keys if k in self.statuses
            ])
        if path == "/api/otp/request":
            return httpx.Response(200, json={})
        if path == "/api/sign/document":
            if self.sign_status != 200:
                return httpx.Response(self.sign_status, json={"Message": "Invalid OTP"})
            return httpx.Response(200, json={})
        return httpx.Response(404)

    def token_requests(self):
        return [r for r in self.requests if str(r.url) == TOKEN_URL]

    def api_requests(self, path):
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def fake_bank():
    return FakeBank()


@pytest.fixture
def gateway(fake_bank):
    gw = BankGateway(
        api_url=API_URL,
        token_url=TOKEN_URL,
        auth_url="https://auth.bank.test/auth",
        client_id="client",
        client_secret="secret",
        withdrawal_client_id="payout-client",
        withdrawal_client_secret="payout-secret",
        company_iban="GE00TB0000000000000001",
        redirect_uri="https://market.test/bank/callback",
        transport=httpx.MockTransport(fake_bank),
    )
    yield gw
    gw.close()


def _transfer(amount_cents=5000, account_number="GE29NB0000000101904917"):
    return TransferRequest(
        account_number=account_number,
        identification_number="01001000001",
        beneficiary_name="Demo Seller",
        amount_cents=amount_cents,
        nomination="Seller payout #1",
    )


def test_client_credentials_token_is_cached(gateway, fake_bank):
    token = gateway.get_access_token()
    assert gateway.get_access_token() == token

    requests = fake_bank.token_requests()
    assert len(requests) == 1
    form = parse_qs(requests[0].content.decode())
    assert form["grant_type"] == ["client_credentials"]
    expected = base64.b64encode(b"client:secret").decode()
    assert requests[0].headers["Authorization"] == f"Basic {expected}"
    # Client-credentials grants never keep a refresh token
    assert gateway.sessions[PROFILE_DEFAULT].refresh_token is None


def test_transfers_use_withdrawal_credentials(gateway, fake_bank):
    gateway.get_access_token(for_transfers=True)

    expected = base64.b64encode(b"payout-client:payout-secret").decode()
    assert fake_bank.token_requests()[0].headers["Authorization"] == f"Basic {expected}"
    assert gateway.sessions[PROFILE_WITHDRAWAL].access_token is not None
    assert gateway.sessions[PROFILE_DEFAULT].access_token is None


def test_expired_token_is_refreshed(gateway, fake_bank):
    session = gateway.sessions[PROFILE_DEFAULT]
    session.access_token = "stale"
    session.refresh_token = "refresh-0"
    session.expires_at = utcnow() - timedelta(seconds=1)

    token = gateway.get_access_token()

    assert token.startswith("token-refresh_token")
    form = parse_qs(fake_bank.token_requests()[0].content.decode())
    assert form["refresh_token"] == ["refresh-0"]


def test_failed_refresh_clears_session_and_falls_back(gateway, fake_bank):
    session = gateway.sessions[PROFILE_DEFAULT]
    session.refresh_token = "revoked"
    fake_bank.token_status = 400

    with pytest.raises(ExternalServiceError):
        gateway.get_access_token()
    assert session.refresh_token is None
    assert len(fake_bank.token_requests()) == 2


def test_exchange_code_logs_operator_in(gateway, fake_bank):
    assert gateway.is_authenticated() is False

    result = gateway.exchange_code("auth-code")

    assert result["authenticated"] is True
    assert gateway.is_authenticated() is True
    form = parse_qs(fake_bank.token_requests()[0].content.decode())
    assert form["grant_type"] == ["authorization_code"]
    assert form["redirect_uri"] == ["https://market.test/bank/callback"]

    gateway.clear_tokens()
    assert gateway.is_authenticated() is False


def test_exchange_code_requires_code(gateway):
    with pytest.raises(ValidationError):
        gateway.exchange_code("")


def test_authorization_url(gateway):
    url = httpx.URL(gateway.authorization_url("xyz"))
    assert url.params["client_id"] == "client"
    assert url.params["response_type"] == "code"
    assert url.params["state"] == "xyz"


def test_transfer_builds_domestic_document(gateway, fake_bank):
    result = gateway.transfer_to_seller(_transfer(5000, "ge29 nb00 0000 0101 9049 17"))

    assert result.is_completed
    assert result.document_key == "555"
    assert result.document_id == "uid-555"

    request = fake_bank.api_requests("/api/documents/domestic")[0]
    body = json.loads(request.content)
    assert len(body) == 1
    document = body[0]
    assert document["Amount"] == 50.0
    assert document["BeneficiaryAccountNumber"] == "GE29NB0000000101904917"
    assert document["BeneficiaryBankCode"] == "BAGAGE22"
    assert document["BeneficiaryInn"] == "01001000001"
    assert document["SourceAccountNumber"] == "GE00TB0000000000000001"
    assert document["DispatchType"] == "BULK"
    assert document["DocumentNo"].startswith("MC-")
    assert request.headers["Authorization"].startswith("Bearer token-client_credentials")


def test_dispatch_type_threshold(gateway):
    assert gateway.dispatch_type(1_000_000) == "BULK"
    assert gateway.dispatch_type(1_000_001) == "MT103"


def test_transfer_awaiting_signature(gateway, fake_bank):
    fake_bank.transfer_response = [{"ResultCode": 0, "UniqueKey": 777, "UniqueId": "uid-777"}]

    result = gateway.transfer_to_seller(_transfer())

    assert result.is_completed is False
    assert result.document_key == "777"


@pytest.mark.parametrize("code", [29, 28, 39, 41, 333, 674])
def test_rejected_transfer_maps_result_code(gateway, fake_bank, code):
    fake_bank.transfer_response = [{"ResultCode": code, "Message": "raw bank message"}]

    with pytest.raises(ExternalServiceError) as exc_info:
        gateway.transfer_to_seller(_transfer())

    assert exc_info.value.message == RESULT_CODE_MESSAGES[code]
    assert exc_info.value.details["result_code"] == code


def test_unknown_result_code_uses_bank_message(gateway, fake_bank):
    fake_bank.transfer_response = [{"ResultCode": 12, "Message": "Daily limit reached"}]

    with pytest.raises(ExternalServiceError, match="Daily limit reached"):
        gateway.transfer_to_seller(_transfer())


@pytest.mark.parametrize("entry", [
    {"ResultCode": None, "UniqueKey": 888},
    {"UniqueKey": 888},
    {"ResultCode": "n/a", "UniqueKey": 888},
])
def test_transfer_without_usable_result_code_is_rejected(gateway, fake_bank, entry):
    fake_bank.transfer_response = [entry]

    with pytest.raises(ExternalServiceError) as exc_info:
        gateway.transfer_to_seller(_transfer())

    assert exc_info.value.message == "Bank did not confirm the transfer. Please try again."
    assert exc_info.value.details["result_code"] == entry.get("ResultCode")


@pytest.mark.parametrize("status, payload", [(200, []), (500, {"error": "boom"})])
def test_transfer_transport_failures(gateway, fake_bank, status, payload):
    fake_bank.transfer_status = status
    fake_bank.transfer_response = payload

    with pytest.raises(ExternalServiceError):
        gateway.transfer_to_seller(_transfer())


def test_transfer_auth_failure(gateway, fake_bank):
    fake_bank.token_status = 401

    with pytest.raises(ExternalServiceError):
        gateway.transfer_to_seller(_transfer())
    assert fake_bank.api_requests("/api/documents/domestic") == []


def test_transfer_input_validation(gateway, fake_bank):
    with pytest.raises(ValidationError):
        gateway.transfer_to_seller(_transfer(account_number="DE89370400440532013000"))
    with pytest.raises(ValidationError):
        gateway.transfer_to_seller(_transfer(amount_cents=0))
    assert fake_bank.requests == []


def test_request_otp(gateway, fake_bank):
    gateway.request_otp("555")

    body = json.loads(fake_bank.api_requests("/api/otp/request")[0].content)
    assert body == {"ObjectKey": 555, "ObjectType": 0}


def test_sign_document_when_awaiting_signature(gateway, fake_bank):
    assert gateway.sign_document("555", "123456") is True

    body = json.loads(fake_bank.api_requests("/api/sign/document")[0].content)
    assert body == {"Otp": "123456", "ObjectKey": 555}


def test_sign_document_rejects_other_statuses(gateway, fake_bank):
    fake_bank.statuses["555"] = "P"

    with pytest.raises(ConflictError):
        gateway.sign_document("555", "123456")
    assert fake_bank.api_requests("/api/sign/document") == []


def test_sign_document_surfaces_bank_message(gateway, fake_bank):
    fake_bank.sign_status = 400

    with pytest.raises(ExternalServiceError, match="Invalid OTP"):
        gateway.sign_document("555", "000000")


def test_document_statuses(gateway, fake_bank):
    fake_bank.statuses = {"1": "P", "2": "R", "3": "A"}

    statuses = gateway.get_document_statuses(["1", "2", "3"])

    assert [s.outcome for s in statuses] == [OUTCOME_COMPLETED, OUTCOME_FAILED, OUTCOME_PENDING]
    assert fake_bank.requests[-1].url.path == "/api/documents/statuses/1,2,3"
    assert gateway.get_document_statuses([]) == []


def test_missing_document_is_not_found(gateway):
    with pytest.raises(NotFoundError):
        gateway.get_document_status("999")


@pytest.mark.parametrize("status, result_code, outcome", [
    ("P", None, OUTCOME_COMPLETED),
    (None, 1, OUTCOME_COMPLETED),
    ("R", None, OUTCOME_FAILED),
    ("C", None, OUTCOME_FAILED),
    ("D", None, OUTCOME_FAILED),
    ("T", -1, OUTCOME_FAILED),
    ("A", 0, OUTCOME_PENDING),
    ("S", None, OUTCOME_PENDING),
    ("Z", None, OUTCOME_PENDING),
])
def test_document_status_outcome(status, result_code, outcome):
    assert DocumentStatus("1", status, result_code).outcome == outcome


def test_account_number_helpers():
    assert validate_account_number("GE29NB0000000101904917")
    assert validate_account_number(" ge29 nb00 0000 0101 9049 17 ")
    assert not validate_account_number("DE89370400440532013000")
    assert not validate_account_number(None)
    assert format_account_number("GE29NB0000000101904917") == "GE29 NB00 0000 0101 9049 17"
