"""
Builds the unsigned payment transaction for one request.
"""

from __future__ import annotations

import time
from typing import Callable

from stellar_sdk import Account, TransactionBuilder

from lumenrelay_core.assets import AssetSpec
from lumenrelay_core.models import (
    AccountSnapshot,
    PaymentOperation,
    PaymentRequest,
    UnsignedTransaction,
)
from lumenrelay_core.preflight import format_amount, parse_amount

DEFAULT_BASE_FEE = 100            # stroops per operation
DEFAULT_VALIDITY_WINDOW = 300     # seconds


class TransactionAssembler:
    """Turns a fresh source snapshot plus a request into an unsigned envelope.

    One payment operation per transaction.  The time bound caps how long the
    ledger may hold the transaction before it must be rejected, which bounds
    how long a caller waits for a definitive outcome.
    """

    def __init__(
        self,
        network_passphrase: str,
        base_fee: int = DEFAULT_BASE_FEE,
        validity_window: int = DEFAULT_VALIDITY_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        if base_fee < 100:
            raise ValueError("base_fee must be at least 100 stroops")
        if validity_window <= 0:
            raise ValueError("validity_window must be positive")
        self.network_passphrase = network_passphrase
        self.base_fee = base_fee
        self.validity_window = validity_window
        self._clock = clock

    def assemble(
        self,
        source: AccountSnapshot,
        request: PaymentRequest,
        asset: AssetSpec,
    ) -> UnsignedTransaction:
        amount = format_amount(parse_amount(request.amount))
        valid_until = int(self._clock()) + self.validity_window

        # The builder bumps the sequence of the Account it is given; build a
        # throwaway Account so the snapshot stays untouched.
        account = Account(source.id, source.sequence)
        envelope = (
            TransactionBuilder(
                source_account=account,
                network_passphrase=self.network_passphrase,
                base_fee=self.base_fee,
            )
            .append_payment_op(
                destination=request.destination,
                asset=asset.to_sdk(),
                amount=amount,
            )
            .add_time_bounds(0, valid_until)
            .build()
        )
        tx = envelope.transaction
        return UnsignedTransaction(
            source_account=source.id,
            sequence_number=tx.sequence,
            fee=tx.fee,
            valid_until=valid_until,
            operations=(PaymentOperation(request.destination, amount, asset),),
            envelope_xdr=envelope.to_xdr(),
            network_passphrase=self.network_passphrase,
        )
