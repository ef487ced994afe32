"""
Preflight checks run before anything that could consume a sequence number.

Shape checks are pure.  The destination check does one ledger read: the
network rejects payments to accounts that don't exist, so failing here
saves the operator a fee and a sequence number.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from stellar_sdk import StrKey

from lumenrelay_core.assets import MAX_ASSET_CODE_LENGTH
from lumenrelay_core.errors import (
    AccountNotFoundError,
    DestinationNotFoundError,
    ValidationError,
)
from lumenrelay_core.gateway import LedgerGateway
from lumenrelay_core.models import PaymentRequest

logger = logging.getLogger("lumenrelay.preflight")

# Amounts are int64 stroops on the ledger: 7 decimal places.
AMOUNT_DECIMALS = 7
MAX_AMOUNT = Decimal("922337203685.4775807")
_STROOP = Decimal("0.0000001")


def parse_amount(value: object) -> Decimal:
    """Parse a payment amount, rejecting NaN, Inf, non-positive and over-precise values."""
    if value is None or isinstance(value, bool) or str(value).strip() == "":
        raise ValidationError("amount is required", field="amount")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError("amount must be a decimal number", field="amount")
    if not amount.is_finite():
        raise ValidationError("amount must be a finite number", field="amount")
    if amount <= 0:
        raise ValidationError("amount must be greater than zero", field="amount")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"amount must not exceed {MAX_AMOUNT}", field="amount")
    if amount.quantize(_STROOP) != amount:
        raise ValidationError(
            f"amount must have at most {AMOUNT_DECIMALS} decimal places", field="amount",
        )
    return amount


def format_amount(amount: Decimal) -> str:
    """Render an amount the way the ledger expects it (no exponent)."""
    return format(amount.normalize(), "f")


class PreflightValidator:
    """Validates a payment request against its shape and the live ledger."""

    def __init__(self, gateway: LedgerGateway):
        self.gateway = gateway

    def check_shape(self, request: PaymentRequest) -> None:
        if not request.destination:
            raise ValidationError("destinationAccount is required", field="destinationAccount")
        if not StrKey.is_valid_ed25519_public_key(request.destination):
            raise ValidationError(
                "destinationAccount is not a valid account id", field="destinationAccount",
            )
        parse_amount(request.amount)
        if not request.asset.is_native and len(request.asset.code) > MAX_ASSET_CODE_LENGTH:
            raise ValidationError(
                f"assetCode must be at most {MAX_ASSET_CODE_LENGTH} characters", field="assetCode",
            )

    async def check_destination(self, request: PaymentRequest) -> None:
        try:
            await self.gateway.get_account(request.destination)
        except AccountNotFoundError:
            logger.info(f"Destination {request.destination} not found; rejecting before submission")
            raise DestinationNotFoundError(request.destination) from None

    async def validate(self, request: PaymentRequest) -> None:
        """Run shape checks, then the destination lookup."""
        self.check_shape(request)
        await self.check_destination(request)
