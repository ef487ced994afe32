"""
Error taxonomy for the LumenRelay payment service.

Every failure the service can report is a ``RelayError`` subclass carrying
structured fields and the HTTP status it maps to.  The API layer catches
them once, at its error middleware, and renders ``{"error": <message>, ...}``.

Ledger result codes
-------------------
A rejected submission comes back from Horizon with result codes such as::

    {"transaction": "tx_failed", "operations": ["op_no_trust"]}

``describe_result_codes`` turns those into readable reason text and
``SubmissionRejectedError`` keeps the raw codes alongside.

Reference:
    https://developers.stellar.org/docs/data/horizon/api-reference/errors/result-codes
"""

from __future__ import annotations

from typing import Any

# ---------------------------------------------------------------------------
# Result code → reason text
# ---------------------------------------------------------------------------

_RESULT_TEXT: dict[str, str] = {
    "tx_bad_seq": "Sequence number conflict, resubmit the payment",
    "tx_too_late": "Transaction expired before it was included in a ledger",
    "tx_too_early": "Transaction is not valid yet",
    "tx_insufficient_balance": "Signing account balance is too low to pay the fee",
    "tx_insufficient_fee": "Fee is below the network minimum",
    "tx_bad_auth": "Transaction signature is invalid for the signing account",
    "tx_no_source_account": "Signing account does not exist on the network",
    "tx_malformed": "Transaction is malformed",
    "op_no_trust": "Destination account has no trust line for this asset",
    "op_src_no_trust": "Signing account has no trust line for this asset",
    "op_underfunded": "Signing account has insufficient funds for this payment",
    "op_no_destination": "Destination account does not exist on the network",
    "op_line_full": "Destination trust line limit would be exceeded",
    "op_no_issuer": "Asset issuer does not exist",
    "op_not_authorized": "Destination is not authorized to hold this asset",
    "op_src_not_authorized": "Signing account is not authorized to send this asset",
    "op_malformed": "Payment operation is malformed",
}

# Rejections the caller can fix without operator involvement.
_CALLER_FIXABLE = frozenset({
    "op_no_trust",
    "op_no_destination",
    "op_line_full",
    "op_no_issuer",
    "op_not_authorized",
    "op_malformed",
})

SEQUENCE_CONFLICT_CODE = "tx_bad_seq"


def describe_result_codes(
    transaction_code: str | None,
    operation_codes: list[str] | tuple[str, ...] = (),
) -> str:
    """Build reason text from ledger result codes.

    Operation codes are more specific than the wrapping ``tx_failed``, so
    they win when present.  Unknown codes are reported verbatim.
    """
    failed_ops = [c for c in operation_codes if c and c != "op_success"]
    if failed_ops:
        return "; ".join(_RESULT_TEXT.get(c, c) for c in failed_ops)
    if transaction_code:
        return _RESULT_TEXT.get(transaction_code, transaction_code)
    return "Transaction rejected by the network"


# ═══════════════════════════════════════════════════════════════════
#  Exceptions
# ═══════════════════════════════════════════════════════════════════

class RelayError(Exception):
    """Base class for every error the service reports to callers."""

    http_status: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        # Pipeline stage the error surfaced in; set by SubmissionPipeline.
        self.stage: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message}


class ValidationError(RelayError):
    """Malformed or missing request fields."""

    http_status = 400

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        if self.field:
            d["field"] = self.field
        return d


class InvalidAssetError(RelayError):
    """The requested asset cannot be built from the supplied fields."""

    http_status = 400

    def __init__(self, message: str, code: str | None = None, issuer: str | None = None):
        super().__init__(message)
        self.code = code
        self.issuer = issuer

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["assetCode"] = self.code
        d["assetIssuer"] = self.issuer
        return d


class DestinationNotFoundError(RelayError):
    """Preflight found no account at the payment destination."""

    http_status = 400

    def __init__(self, account_id: str):
        super().__init__("Destination account does not exist on the network")
        self.account_id = account_id


class AccountNotFoundError(RelayError):
    """A ledger read returned 404 for the account."""

    http_status = 404

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} does not exist on the network")
        self.account_id = account_id


class UpstreamUnavailableError(RelayError):
    """Ledger service timed out, refused the connection, or returned 5xx."""

    http_status = 503

    def __init__(self, message: str, operation: str | None = None):
        super().__init__(message)
        self.operation = operation


class SubmissionRejectedError(RelayError):
    """The ledger received the signed transaction and refused it."""

    http_status = 500

    def __init__(
        self,
        transaction_code: str | None,
        operation_codes: list[str] | tuple[str, ...] = (),
        detail: str | None = None,
    ):
        self.transaction_code = transaction_code
        self.operation_codes = tuple(operation_codes)
        self.detail = detail
        super().__init__(describe_result_codes(transaction_code, self.operation_codes))

    @property
    def is_sequence_conflict(self) -> bool:
        return self.transaction_code == SEQUENCE_CONFLICT_CODE

    @property
    def caller_fixable(self) -> bool:
        return any(c in _CALLER_FIXABLE for c in self.operation_codes)

    def to_dict(self) -> dict[str, Any]:
        d = super().to_dict()
        d["resultCodes"] = {
            "transaction": self.transaction_code,
            "operations": list(self.operation_codes),
        }
        return d


class InvalidCredentialError(RelayError):
    """The configured signing secret cannot be parsed.  Fatal at startup."""

    http_status = 500
