"""
Value objects passed between the pipeline stages.

All of them are frozen: an account snapshot is a point-in-time read and a
transaction is built for exactly one submission.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from lumenrelay_core.assets import AssetSpec
from lumenrelay_core.errors import UpstreamUnavailableError


@dataclass(frozen=True)
class PaymentRequest:
    """A caller's request to pay ``amount`` of ``asset`` to ``destination``."""

    destination: str
    amount: str
    asset: AssetSpec


# ═══════════════════════════════════════════════════════════════════
#  Account reads
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BalanceLine:
    asset_type: str
    balance: str
    asset_code: str | None = None
    asset_issuer: str | None = None
    limit: str | None = None

    @classmethod
    def from_horizon(cls, raw: dict[str, Any]) -> BalanceLine:
        return cls(
            asset_type=raw.get("asset_type", ""),
            balance=str(raw.get("balance", "0")),
            asset_code=raw.get("asset_code"),
            asset_issuer=raw.get("asset_issuer"),
            limit=raw.get("limit"),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"asset_type": self.asset_type, "balance": self.balance}
        if self.asset_code is not None:
            d["asset_code"] = self.asset_code
            d["asset_issuer"] = self.asset_issuer
        if self.limit is not None:
            d["limit"] = self.limit
        return d


@dataclass(frozen=True)
class AccountSigner:
    key: str
    weight: int
    type: str

    @classmethod
    def from_horizon(cls, raw: dict[str, Any]) -> AccountSigner:
        return cls(
            key=raw.get("key", ""),
            weight=int(raw.get("weight", 0)),
            type=raw.get("type", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "weight": self.weight, "type": self.type}


@dataclass(frozen=True)
class AccountSnapshot:
    """Point-in-time view of a ledger account."""

    id: str
    sequence: int
    subentry_count: int = 0
    last_modified_ledger: int | None = None
    last_modified_time: str | None = None
    balances: tuple[BalanceLine, ...] = ()
    signers: tuple[AccountSigner, ...] = ()
    paging_token: str | None = None

    @classmethod
    def from_horizon(cls, raw: dict[str, Any]) -> AccountSnapshot:
        """Build a snapshot from a Horizon ``/accounts/{id}`` record.

        Raises UpstreamUnavailableError when the record lacks the account
        fields, e.g. when the ledger service answered with another resource.
        """
        try:
            return cls(
                id=raw.get("account_id") or raw["id"],
                sequence=int(raw["sequence"]),
                subentry_count=int(raw.get("subentry_count", 0)),
                last_modified_ledger=raw.get("last_modified_ledger"),
                last_modified_time=raw.get("last_modified_time"),
                balances=tuple(BalanceLine.from_horizon(b) for b in raw.get("balances", [])),
                signers=tuple(AccountSigner.from_horizon(s) for s in raw.get("signers", [])),
                paging_token=raw.get("paging_token"),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise UpstreamUnavailableError(
                "Malformed account record from the ledger service", operation="get_account",
            ) from exc

    def to_wallet_details(self) -> dict[str, Any]:
        """JSON shape of ``POST /wallet/details``."""
        return {
            "id": self.id,
            "pagingToken": self.paging_token,
            "accountSequence": str(self.sequence),
            "balances": [b.to_dict() for b in self.balances],
            "signers": [s.to_dict() for s in self.signers],
            "subentryCount": self.subentry_count,
            "lastModifiedLedger": self.last_modified_ledger,
            "lastModifiedTime": self.last_modified_time,
        }


# ═══════════════════════════════════════════════════════════════════
#  Transactions
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PaymentOperation:
    destination: str
    amount: str
    asset: AssetSpec


@dataclass(frozen=True)
class UnsignedTransaction:
    """An assembled transaction awaiting the operator's signature.

    ``sequence_number`` is the value this transaction consumes on the
    ledger, one above the snapshot it was built from.
    """

    source_account: str
    sequence_number: int
    fee: int
    valid_until: int
    operations: tuple[PaymentOperation, ...]
    envelope_xdr: str = field(repr=False)
    network_passphrase: str = field(repr=False)


@dataclass(frozen=True)
class SignedTransaction:
    source_account: str
    sequence_number: int
    envelope_xdr: str = field(repr=False)
    hash: str = ""


@dataclass(frozen=True)
class SubmissionResult:
    """Normalized outcome of an accepted submission."""

    hash: str
    ledger: int | None
    envelope_xdr: str
    source_account: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "hash": self.hash,
            "ledger": self.ledger,
            "envelope_xdr": self.envelope_xdr,
            "sourceAccount": self.source_account,
        }


@dataclass(frozen=True)
class TransactionHistoryEntry:
    """Read-only projection of a Horizon transaction record."""

    id: str
    hash: str
    ledger: int | None
    type: str
    successful: bool
    created_at: str
    source_account: str
    fee_paid: str
    operation_count: int
    memo: str | None = None

    @classmethod
    def from_horizon(cls, raw: dict[str, Any]) -> TransactionHistoryEntry:
        try:
            return cls(
                id=raw.get("id", ""),
                hash=raw.get("hash", ""),
                ledger=raw.get("ledger"),
                type=raw.get("type", "transaction"),
                successful=bool(raw.get("successful", False)),
                created_at=raw.get("created_at", ""),
                source_account=raw.get("source_account", ""),
                fee_paid=str(raw.get("fee_charged", raw.get("fee_paid", "0"))),
                operation_count=int(raw.get("operation_count", 0)),
                memo=raw.get("memo"),
            )
        except (TypeError, ValueError, AttributeError) as exc:
            raise UpstreamUnavailableError(
                "Malformed transaction record from the ledger service",
                operation="list_transactions",
            ) from exc

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "hash": self.hash,
            "ledger": self.ledger,
            "type": self.type,
            "successful": self.successful,
            "created_at": self.created_at,
            "source_account": self.source_account,
            "fee_paid": self.fee_paid,
            "operation_count": self.operation_count,
        }
        if self.memo is not None:
            d["memo"] = self.memo
        return d
