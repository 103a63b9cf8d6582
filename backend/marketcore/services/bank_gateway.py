# Overview: HTTP client for the corporate banking API (OAuth tokens, transfers, OTP signing, status).

"""
Bank transfer gateway.

TOKENS:
- One BankSession per credential profile: "default" (operator OAuth login,
  status/OTP/sign calls) and "withdrawal" (money movement only).
- get_access_token: valid cached token -> refresh grant -> client credentials.
- Token requests are form encoded with HTTP Basic client authentication.

RESULT CODES (document creation):
- 1: completed immediately
- 0: created, awaiting OTP signature
- anything else: rejected, mapped to a readable message
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
from flask import current_app

from ..errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from ..time_utils import utcnow

logger = logging.getLogger(__name__)

PROFILE_DEFAULT = "default"
PROFILE_WITHDRAWAL = "withdrawal"

RESULT_COMPLETED = 1
RESULT_AWAITING_SIGNATURE = 0

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_PENDING = "pending"

STATUS_TEXT = {
    "C": "Cancelled by Response",
    "N": "Incomplete",
    "D": "Cancelled by Bank",
    "P": "Completed",
    "A": "To be Signed",
    "S": "Signed",
    "T": "In Progress",
    "R": "Rejected",
    "Z": "Sign In Progress",
}

_TERMINAL_FAILED_STATUSES = {"R", "C", "D"}

RESULT_CODE_MESSAGES = {
    29: "Account number and identification number do not match. Check the payout details in the profile.",
    28: "Transfers with identity check are only possible to accounts at the same bank.",
    39: "Beneficiary account number is invalid. Check the IBAN.",
    44: "Beneficiary account number is invalid. Check the IBAN.",
    87: "Beneficiary account number is invalid. Check the IBAN.",
    41: "Beneficiary identification number is invalid.",
    333: "Insufficient funds on the company account for this transfer.",
    444: "Insufficient funds on the company account for this transfer.",
    674: "The API user has no permission to transfer from this account.",
}

ACCOUNT_NUMBER_RE = re.compile(r"^GE\d{2}[A-Z]{2,4}\d{14,18}$")


def _clean_account_number(account_number: str | None) -> str:
    return re.sub(r"\s+", "", account_number or "").upper()


def validate_account_number(account_number: str | None) -> bool:
    """True when the value looks like a Georgian IBAN (spaces and case ignored)."""
    return bool(ACCOUNT_NUMBER_RE.match(_clean_account_number(account_number)))


def format_account_number(account_number: str | None) -> str:
    """Group an account number in blocks of four for display."""
    clean = _clean_account_number(account_number)
    return " ".join(clean[i:i + 4] for i in range(0, len(clean), 4))


@dataclass
class BankSession:
    """Token state for one credential profile."""
    profile: str
    client_id: str
    client_secret: str
    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    expires_at: datetime | None = None

    def has_valid_token(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return bool(self.access_token and self.expires_at and now < self.expires_at)

    def store(self, payload: dict) -> None:
        self.access_token = payload.get("access_token")
        self.refresh_token = payload.get("refresh_token") or None
        self.id_token = payload.get("id_token") or None
        expires_in = int(payload.get("expires_in") or 3600)
        self.expires_at = utcnow() + timedelta(seconds=expires_in)

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None
        self.id_token = None
        self.expires_at = None


@dataclass(frozen=True)
class TransferRequest:
    account_number: str
    identification_number: str
    beneficiary_name: str
    amount_cents: int
    nomination: str
    bank_code: str | None = None


@dataclass(frozen=True)
class TransferResult:
    document_id: str | None
    document_key: str | None
    result_code: int
    match: float | None = None

    @property
    def is_completed(self) -> bool:
        return self.result_code == RESULT_COMPLETED


@dataclass(frozen=True)
class DocumentStatus:
    document_key: str
    status: str | None
    result_code: int | None
    raw: dict = field(default_factory=dict, compare=False)

    @property
    def status_text(self) -> str:
        return STATUS_TEXT.get(self.status or "", "Unknown")

    @property
    def outcome(self) -> str:
        if self.result_code == RESULT_COMPLETED or self.status == "P":
            return OUTCOME_COMPLETED
        if (self.result_code is not None and self.result_code < 0) or self.status in _TERMINAL_FAILED_STATUSES:
            return OUTCOME_FAILED
        return OUTCOME_PENDING

    @classmethod
    def from_payload(cls, document_key, payload: dict) -> "DocumentStatus":
        result_code = payload.get("ResultCode")
        return cls(
            document_key=str(payload.get("UniqueKey") or document_key),
            status=payload.get("Status"),
            result_code=int(result_code) if result_code is not None else None,
            raw=payload,
        )

    def to_dict(self) -> dict:
        return {
            "document_key": self.document_key,
            "status": self.status,
            "status_text": self.status_text,
            "result_code": self.result_code,
            "outcome": self.outcome,
        }


class BankGateway:
    """
    Client for the bank's business API.

    transport is passed straight to httpx.Client (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        *,
        api_url: str,
        token_url: str,
        auth_url: str = "",
        client_id: str = "",
        client_secret: str = "",
        withdrawal_client_id: str = "",
        withdrawal_client_secret: str = "",
        company_iban: str = "",
        redirect_uri: str = "",
        timeout: float = 30.0,
        default_bank_code: str = "BAGAGE22",
        bulk_limit_cents: int = 1_000_000,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.token_url = token_url
        self.auth_url = auth_url
        self.company_iban = company_iban
        self.redirect_uri = redirect_uri
        self.default_bank_code = default_bank_code
        self.bulk_limit_cents = bulk_limit_cents
        self.client = httpx.Client(timeout=timeout, transport=transport)
        self.sessions = {
            PROFILE_DEFAULT: BankSession(PROFILE_DEFAULT, client_id, client_secret),
            PROFILE_WITHDRAWAL: BankSession(
                PROFILE_WITHDRAWAL,
                withdrawal_client_id or client_id,
                withdrawal_client_secret or client_secret,
            ),
        }

    @classmethod
    def from_config(cls, config, transport: httpx.BaseTransport | None = None) -> "BankGateway":
        return cls(
            api_url=config["BANK_API_URL"],
            token_url=config["BANK_TOKEN_URL"],
            auth_url=config.get("BANK_AUTH_URL", ""),
            client_id=config.get("BANK_CLIENT_ID", ""),
            client_secret=config.get("BANK_CLIENT_SECRET", ""),
            withdrawal_client_id=config.get("BANK_WITHDRAWAL_CLIENT_ID", ""),
            withdrawal_client_secret=config.get("BANK_WITHDRAWAL_CLIENT_SECRET", ""),
            company_iban=config.get("BANK_COMPANY_IBAN", ""),
            redirect_uri=config.get("BANK_REDIRECT_URI", ""),
            timeout=float(config.get("BANK_TIMEOUT_SECONDS", 30.0)),
            default_bank_code=config.get("BANK_DEFAULT_BANK_CODE", "BAGAGE22"),
            bulk_limit_cents=int(config.get("BULK_TRANSFER_LIMIT_CENTS", 1_000_000)),
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def _token_request(self, session: BankSession, data: dict) -> dict:
        response = self.client.post(
            self.token_url,
            data=data,
            auth=(session.client_id, session.client_secret),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        response.raise_for_status()
        payload = response.json()
        if not payload.get("access_token"):
            raise ExternalServiceError("Token endpoint returned no access token")
        return payload

    def _refresh(self, session: BankSession) -> str:
        try:
            payload = self._token_request(session, {
                "grant_type": "refresh_token",
                "refresh_token": session.refresh_token,
            })
        except (httpx.HTTPError, ValueError, ExternalServiceError):
            session.clear()
            raise
        session.store(payload)
        logger.info("Refreshed bank access token (%s)", session.profile)
        return session.access_token

    def get_access_token(self, for_transfers: bool = False) -> str:
        session = self.sessions[PROFILE_WITHDRAWAL if for_transfers else PROFILE_DEFAULT]
        if session.has_valid_token():
            return session.access_token

        if session.refresh_token:
            try:
                return self._refresh(session)
            except (httpx.HTTPError, ValueError, ExternalServiceError) as exc:
                logger.warning("Token refresh failed, falling back to client credentials: %s", exc)

        try:
            payload = self._token_request(session, {
                "grant_type": "client_credentials",
                "client_id": session.client_id,
                "client_secret": session.client_secret,
            })
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Bank authentication failed (%s): %s", session.profile, exc)
            raise ExternalServiceError(
                "Failed to authenticate with bank API",
                details={"profile": session.profile},
            ) from exc
        # Client-credentials tokens are never refreshable
        payload.pop("refresh_token", None)
        session.store(payload)
        logger.info("Obtained bank access token via client credentials (%s)", session.profile)
        return session.access_token

    def authorization_url(self, state: str | None = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self.sessions[PROFILE_DEFAULT].client_id,
            "redirect_uri": self.redirect_uri,
            "scope": "openid",
        }
        if state:
            params["state"] = state
        return str(httpx.URL(self.auth_url, params=params))

    def exchange_code(self, code: str) -> dict:
        """Complete the operator OAuth login by trading an authorization code for tokens."""
        if not code:
            raise ValidationError("Authorization code is required")
        session = self.sessions[PROFILE_DEFAULT]
        try:
            payload = self._token_request(session, {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
            })
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceError("Failed to obtain access token from authorization code") from exc
        session.store(payload)
        logger.info("Bank OAuth login completed")
        return {
            "authenticated": True,
            "expires_at": session.expires_at.isoformat() if session.expires_at else None,
        }

    def is_authenticated(self) -> bool:
        session = self.sessions[PROFILE_DEFAULT]
        return session.has_valid_token() or bool(session.refresh_token)

    def clear_tokens(self) -> None:
        for session in self.sessions.values():
            session.clear()
        logger.info("Bank tokens cleared")

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------

    def _headers(self, token: str) -> dict:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _get(self, path: str, *, for_transfers: bool = False) -> httpx.Response:
        token = self.get_access_token(for_transfers=for_transfers)
        response = self.client.get(f"{self.api_url}{path}", headers=self._headers(token))
        response.raise_for_status()
        return response

    def _post(self, path: str, json, *, for_transfers: bool = False) -> httpx.Response:
        token = self.get_access_token(for_transfers=for_transfers)
        response = self.client.post(f"{self.api_url}{path}", headers=self._headers(token), json=json)
        response.raise_for_status()
        return response

    def dispatch_type(self, amount_cents: int) -> str:
        return "BULK" if amount_cents <= self.bulk_limit_cents else "MT103"

    def transfer_to_seller(self, request: TransferRequest) -> TransferResult:
        """Create a domestic transfer document. Raises ExternalServiceError on rejection."""
        account_number = _clean_account_number(request.account_number)
        if not account_number.startswith("GE"):
            raise ValidationError("Invalid IBAN format. Must start with GE")
        if request.amount_cents <= 0:
            raise ValidationError("Transfer amount must be greater than 0")

        document = {
            "Nomination": request.nomination,
            "ValueDate": utcnow().isoformat(),
            "UniqueId": str(uuid.uuid4()),
            "Amount": float(Decimal(request.amount_cents) / 100),
            "DocumentNo": f"MC-{int(time.time() * 1000)}",
            "SourceAccountNumber": self.company_iban,
            "BeneficiaryAccountNumber": account_number,
            "BeneficiaryBankCode": request.bank_code or self.default_bank_code,
            "BeneficiaryInn": request.identification_number,
            "BeneficiaryName": request.beneficiary_name,
            "DispatchType": self.dispatch_type(request.amount_cents),
        }

        try:
            response = self._post("/documents/domestic", [document], for_transfers=True)
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Bank transfer request failed: %s", exc)
            raise ExternalServiceError("Failed to process bank transfer. Please try again.") from exc

        result = data[0] if isinstance(data, list) and data else None
        if not result:
            raise ExternalServiceError("Bank API returned an invalid response")

        raw_code = result.get("ResultCode")
        try:
            result_code = int(raw_code)
        except (TypeError, ValueError):
            logger.error("Bank returned a transfer result without a usable ResultCode: %r", raw_code)
            raise ExternalServiceError(
                result.get("Message") or "Bank did not confirm the transfer. Please try again.",
                details={"result_code": raw_code},
            ) from None
        if result_code not in (RESULT_COMPLETED, RESULT_AWAITING_SIGNATURE):
            message = RESULT_CODE_MESSAGES.get(result_code) or result.get("Message") or (
                f"Transfer failed with result code {result_code}"
            )
            logger.error("Bank rejected transfer: code=%s message=%s", result_code, result.get("Message"))
            raise ExternalServiceError(message, details={"result_code": result_code})

        unique_key = result.get("UniqueKey")
        logger.info(
            "Transfer document created, result code %s", result_code,
            extra={"document_key": unique_key},
        )
        return TransferResult(
            document_id=result.get("UniqueId"),
            document_key=str(unique_key) if unique_key is not None else None,
            result_code=result_code,
            match=result.get("Match"),
        )

    def request_otp(self, document_key) -> None:
        try:
            self._post("/otp/request", {"ObjectKey": int(document_key), "ObjectType": 0})
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceError("Failed to request OTP", details={"document_key": str(document_key)}) from exc
        logger.info("OTP requested", extra={"document_key": str(document_key)})

    def sign_document(self, document_key, otp: str) -> bool:
        if not otp:
            raise ValidationError("OTP is required")
        status = self.get_document_status(document_key)
        if status.status != "A":
            raise ConflictError(
                f"Document cannot be signed. Current status: {status.status} ({status.status_text})",
                details={"document_key": str(document_key), "status": status.status},
            )
        try:
            self._post("/sign/document", {"Otp": otp, "ObjectKey": int(document_key)})
        except httpx.HTTPStatusError as exc:
            try:
                message = exc.response.json().get("Message")
            except ValueError:
                message = None
            raise ExternalServiceError(
                message or "Failed to sign document",
                details={"document_key": str(document_key)},
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError("Bank server unreachable") from exc
        logger.info("Document signed", extra={"document_key": str(document_key)})
        return True

    def get_document_statuses(self, document_keys) -> list[DocumentStatus]:
        keys = [str(k) for k in document_keys]
        if not keys:
            return []
        try:
            data = self._get(f"/documents/statuses/{','.join(keys)}").json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceError(
                "Failed to fetch document status",
                details={"document_keys": keys},
            ) from exc
        items = data if isinstance(data, list) else [data]
        return [DocumentStatus.from_payload(keys[i] if i < len(keys) else None, item) for i, item in enumerate(items) if item]

    def get_document_status(self, document_key) -> DocumentStatus:
        statuses = self.get_document_statuses([document_key])
        if not statuses:
            raise NotFoundError("Document not found", details={"document_key": str(document_key)})
        return statuses[0]


def get_gateway() -> BankGateway:
    return current_app.extensions["bank_gateway"]
