"""
Custody of the operator's signing key.

The keypair is resolved once per process, from the configured secret or
freshly generated, and never leaves this object.  Callers get the public
key and a ``sign`` method; nothing else.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from stellar_sdk import Keypair, TransactionEnvelope

from lumenrelay_core.errors import (
    AccountNotFoundError,
    InvalidCredentialError,
    RelayError,
)
from lumenrelay_core.models import SignedTransaction, UnsignedTransaction

if TYPE_CHECKING:
    from lumenrelay_core.gateway import LedgerGateway

logger = logging.getLogger("lumenrelay.custody")


class KeyCustody:
    """Holds the signing keypair for the lifetime of the process."""

    __slots__ = ("_keypair", "ephemeral")

    def __init__(self, keypair: Keypair, *, ephemeral: bool = False):
        if not keypair.can_sign():
            raise InvalidCredentialError("Signing keypair has no private key")
        self._keypair = keypair
        self.ephemeral = ephemeral

    # ---- factory ----

    @classmethod
    def resolve(cls, configured_secret: str | None = None) -> KeyCustody:
        """Load the keypair from ``configured_secret`` or generate one.

        A generated key is not durable: it changes on every restart, so the
        account it controls is effectively abandoned each time.
        """
        secret = (configured_secret or "").strip()
        if not secret:
            custody = cls(Keypair.random(), ephemeral=True)
            logger.warning(
                "No signing secret configured. Using an ephemeral keypair "
                "that WILL RESET ON RESTART. "
                f"Generated public key: {custody.public_key}"
            )
            return custody
        try:
            keypair = Keypair.from_secret(secret)
        except ValueError as exc:
            raise InvalidCredentialError("Configured signing secret is not a valid secret seed") from exc
        logger.info(f"Signing transactions with public key {keypair.public_key}")
        return cls(keypair)

    # ---- public surface ----

    @property
    def public_key(self) -> str:
        return self._keypair.public_key

    def sign(self, unsigned: UnsignedTransaction) -> SignedTransaction:
        """Sign ``unsigned`` and return the wire-ready envelope."""
        if unsigned.source_account != self.public_key:
            raise RelayError(
                f"Refusing to sign for source {unsigned.source_account}: "
                f"custody key is {self.public_key}"
            )
        envelope = TransactionEnvelope.from_xdr(
            unsigned.envelope_xdr, unsigned.network_passphrase,
        )
        envelope.sign(self._keypair)
        return SignedTransaction(
            source_account=unsigned.source_account,
            sequence_number=unsigned.sequence_number,
            envelope_xdr=envelope.to_xdr(),
            hash=envelope.hash_hex(),
        )

    async def ensure_funded(self, gateway: LedgerGateway) -> bool:
        """Make sure the signing account exists, asking friendbot if not.

        Best-effort: every failure is logged and reported as ``False``.
        """
        try:
            await gateway.get_account(self.public_key)
            logger.info(f"Signing account already exists: {self.public_key}")
            return True
        except AccountNotFoundError:
            logger.info(f"Signing account not found, requesting friendbot funding: {self.public_key}")
        except RelayError as exc:
            logger.error(f"Could not check signing account {self.public_key}: {exc.message}")
            return False

        try:
            await gateway.fund_account(self.public_key)
        except RelayError as exc:
            logger.error(f"Failed to fund signing account {self.public_key}: {exc.message}")
            return False
        logger.info(f"Funded signing account {self.public_key}")
        return True

    def __repr__(self) -> str:
        return f"KeyCustody(public_key={self.public_key!r}, ephemeral={self.ephemeral})"
