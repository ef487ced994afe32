"""
Shared pytest fixtures for the LumenRelay test suite.

``FakeLedger`` implements the ``LedgerGateway`` protocol in memory.  It
decodes the real signed envelopes it is given and enforces the rules the
pipeline depends on: sequence numbers, destination existence, trust lines
and balances.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import pytest
from stellar_sdk import Keypair, TransactionEnvelope

from lumenrelay_core.assembler import TransactionAssembler
from lumenrelay_core.config import TESTNET_PASSPHRASE
from lumenrelay_core.custody import KeyCustody
from lumenrelay_core.errors import (
    AccountNotFoundError,
    SubmissionRejectedError,
    UpstreamUnavailableError,
)
from lumenrelay_core.models import AccountSnapshot, BalanceLine, TransactionHistoryEntry
from lumenrelay_core.pipeline import SubmissionPipeline

FIXED_NOW = 1_700_000_000
DESTINATION = Keypair.random().public_key
ISSUER = Keypair.random().public_key
MISSING = Keypair.random().public_key


class FakeLedger:
    """In-memory ledger speaking the ``LedgerGateway`` protocol."""

    def __init__(self, network_passphrase: str = TESTNET_PASSPHRASE):
        self.network_passphrase = network_passphrase
        self.accounts: dict[str, dict[str, Any]] = {}
        self.history: dict[str, list[TransactionHistoryEntry]] = {}
        self.calls: list[tuple[str, str]] = []
        self.ledger_index = 5000
        self.read_fault: str | None = None        # account id whose reads fail
        self.submit_fault = False
        self.funded: list[str] = []
        self.started = False
        self.closed = False
        # Hold reads of this account until ``_barrier_size`` of them arrive.
        self._barrier_account: str | None = None
        self._barrier_size = 0
        self._barrier_waiting = 0
        self._barrier_release: asyncio.Event | None = None

    # ── setup helpers ────────────────────────────────────────────

    def add_account(
        self,
        account_id: str,
        sequence: int = 100,
        native: str = "10000",
        trust: tuple[tuple[str, str], ...] = (),
    ) -> None:
        self.accounts[account_id] = {
            "sequence": sequence,
            "native": Decimal(native),
            "trust": set(trust),
        }

    def hold_reads(self, account_id: str, until: int) -> None:
        self._barrier_account = account_id
        self._barrier_size = until

    def reads_of(self, account_id: str) -> int:
        return self.calls.count(("get_account", account_id))

    @property
    def submissions(self) -> int:
        return sum(1 for c in self.calls if c[0] == "submit_transaction")

    # ── lifecycle (mirrors HorizonGateway) ───────────────────────

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    # ── LedgerGateway ────────────────────────────────────────────

    async def get_account(self, account_id: str) -> AccountSnapshot:
        self.calls.append(("get_account", account_id))
        await asyncio.sleep(0)
        if self.read_fault == account_id:
            raise UpstreamUnavailableError("Ledger service timed out during get_account", "get_account")
        if account_id == self._barrier_account:
            await self._wait_at_barrier()
        acct = self.accounts.get(account_id)
        if acct is None:
            raise AccountNotFoundError(account_id)
        return AccountSnapshot(
            id=account_id,
            sequence=acct["sequence"],
            balances=(BalanceLine(asset_type="native", balance=str(acct["native"])),),
        )

    async def list_transactions(self, account_id: str, limit: int = 50, order: str = "desc"):
        self.calls.append(("list_transactions", account_id))
        if account_id not in self.accounts:
            raise AccountNotFoundError(account_id)
        return self.history.get(account_id, [])[:limit]

    async def submit_transaction(self, envelope_xdr: str) -> dict[str, Any]:
        self.calls.append(("submit_transaction", ""))
        await asyncio.sleep(0)
        if self.submit_fault:
            raise UpstreamUnavailableError("Ledger service unreachable during submit_transaction")

        envelope = TransactionEnvelope.from_xdr(envelope_xdr, self.network_passphrase)
        tx = envelope.transaction
        source = self.accounts.get(tx.source.account_id)
        if source is None:
            raise SubmissionRejectedError("tx_no_source_account")
        if tx.sequence != source["sequence"] + 1:
            raise SubmissionRejectedError("tx_bad_seq")
        if not envelope.signatures:
            raise SubmissionRejectedError("tx_bad_auth")

        op = tx.operations[0]
        destination = self.accounts.get(op.destination.account_id)
        amount = Decimal(str(op.amount))
        if destination is None:
            raise SubmissionRejectedError("tx_failed", ["op_no_destination"])
        if op.asset.is_native():
            if source["native"] < amount:
                raise SubmissionRejectedError("tx_failed", ["op_underfunded"])
            source["native"] -= amount
            destination["native"] += amount
        elif (op.asset.code, op.asset.issuer) not in destination["trust"]:
            raise SubmissionRejectedError("tx_failed", ["op_no_trust"])

        source["sequence"] = tx.sequence
        self.ledger_index += 1
        return {
            "hash": envelope.hash_hex(),
            "ledger": self.ledger_index,
            "envelope_xdr": envelope_xdr,
            "successful": True,
        }

    async def fund_account(self, account_id: str) -> dict[str, Any]:
        self.calls.append(("fund_account", account_id))
        self.funded.append(account_id)
        self.add_account(account_id, sequence=0)
        return {"successful": True}

    async def _wait_at_barrier(self) -> None:
        if self._barrier_release is None:
            self._barrier_release = asyncio.Event()
        self._barrier_waiting += 1
        if self._barrier_waiting >= self._barrier_size:
            self._barrier_release.set()
        await self._barrier_release.wait()


# ═══════════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════════

@pytest.fixture
def custody():
    """Custody over a fresh random keypair."""
    return KeyCustody(Keypair.random())


@pytest.fixture
def ledger(custody):
    """Fake ledger with a funded signing account and one destination."""
    fake = FakeLedger()
    fake.add_account(custody.public_key, sequence=1_000, native="500")
    fake.add_account(DESTINATION, sequence=7, native="1")
    return fake


@pytest.fixture
def assembler():
    return TransactionAssembler(TESTNET_PASSPHRASE, clock=lambda: FIXED_NOW)


@pytest.fixture
def pipeline(ledger, custody, assembler):
    return SubmissionPipeline(ledger, custody, assembler)
