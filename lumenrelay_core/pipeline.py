"""
Payment submission pipeline.

One request moves through these stages; REJECTED is reachable from each::

    RECEIVED -> VALIDATING -> PREFLIGHT_CHECKING -> FETCHING_SOURCE_ACCOUNT
             -> ASSEMBLING -> SIGNING -> SUBMITTING -> ACCEPTED

Ledger traffic per request: one destination read, one source read, one
submission.  Nothing before SUBMITTING consumes a sequence number, and a
failed request leaves no signed envelope behind.

Sequence race
-------------
The signing account's sequence number lives only on the ledger.  Two
requests that fetch the same sequence before either submits will both be
signed; the ledger accepts one and rejects the other with ``tx_bad_seq``.
The pipeline never retries: the loser surfaces as a
``SubmissionRejectedError`` with ``is_sequence_conflict`` set and the caller
may resubmit.  With ``serialize_submissions=True`` the fetch-to-submit span
runs under a lock, so submissions through one pipeline never race each
other (other processes sharing the key still can).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum

from lumenrelay_core.assembler import TransactionAssembler
from lumenrelay_core.custody import KeyCustody
from lumenrelay_core.errors import (
    AccountNotFoundError,
    RelayError,
    SubmissionRejectedError,
    UpstreamUnavailableError,
)
from lumenrelay_core.gateway import LedgerGateway
from lumenrelay_core.models import AccountSnapshot, PaymentRequest, SubmissionResult
from lumenrelay_core.preflight import PreflightValidator

logger = logging.getLogger("lumenrelay.pipeline")


class SubmissionStage(str, Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    PREFLIGHT_CHECKING = "preflight_checking"
    FETCHING_SOURCE_ACCOUNT = "fetching_source_account"
    ASSEMBLING = "assembling"
    SIGNING = "signing"
    SUBMITTING = "submitting"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


def _advance(stage: SubmissionStage) -> SubmissionStage:
    logger.debug(f"stage -> {stage.value}")
    return stage


class SubmissionPipeline:
    """Validates, assembles, signs and submits one payment per call."""

    def __init__(
        self,
        gateway: LedgerGateway,
        custody: KeyCustody,
        assembler: TransactionAssembler,
        preflight: PreflightValidator | None = None,
        *,
        serialize_submissions: bool = False,
    ):
        self.gateway = gateway
        self.custody = custody
        self.assembler = assembler
        self.preflight = preflight or PreflightValidator(gateway)
        self._writer_lock = asyncio.Lock() if serialize_submissions else None

    @property
    def serializes_submissions(self) -> bool:
        return self._writer_lock is not None

    async def submit(self, request: PaymentRequest) -> SubmissionResult:
        """Run ``request`` through every stage and return the ledger's verdict.

        Raises a ``RelayError`` subclass tagged with the stage it failed in.
        """
        stage = _advance(SubmissionStage.RECEIVED)
        logger.debug(f"payment to {request.destination}: {request.amount} {request.asset}")
        try:
            stage = _advance(SubmissionStage.VALIDATING)
            self.preflight.check_shape(request)

            stage = _advance(SubmissionStage.PREFLIGHT_CHECKING)
            await self.preflight.check_destination(request)

            lock = self._writer_lock or contextlib.nullcontext()
            async with lock:
                stage = _advance(SubmissionStage.FETCHING_SOURCE_ACCOUNT)
                source = await self._fetch_source()

                stage = _advance(SubmissionStage.ASSEMBLING)
                unsigned = self.assembler.assemble(source, request, request.asset)

                stage = _advance(SubmissionStage.SIGNING)
                signed = self.custody.sign(unsigned)

                stage = _advance(SubmissionStage.SUBMITTING)
                logger.debug(f"submitting {signed.hash} at sequence {signed.sequence_number}")
                response = await self.gateway.submit_transaction(signed.envelope_xdr)
        except RelayError as exc:
            exc.stage = stage.value
            self._log_rejection(request, stage, exc)
            raise

        result = SubmissionResult(
            hash=response.get("hash") or signed.hash,
            ledger=response.get("ledger"),
            envelope_xdr=response.get("envelope_xdr") or signed.envelope_xdr,
            source_account=self.custody.public_key,
        )
        if result.hash != signed.hash:
            logger.warning(f"ledger reported hash {result.hash}, signed envelope hash is {signed.hash}")
        logger.info(
            f"{SubmissionStage.ACCEPTED.value}: {result.hash} in ledger {result.ledger} "
            f"({request.amount} {request.asset} -> {request.destination})"
        )
        return result

    async def _fetch_source(self) -> AccountSnapshot:
        try:
            return await self.gateway.get_account(self.custody.public_key)
        except AccountNotFoundError:
            raise UpstreamUnavailableError(
                f"Signing account {self.custody.public_key} does not exist on the network",
                operation="get_account",
            ) from None

    @staticmethod
    def _log_rejection(request: PaymentRequest, stage: SubmissionStage, exc: RelayError) -> None:
        if isinstance(exc, SubmissionRejectedError) and exc.is_sequence_conflict:
            logger.warning(
                f"{SubmissionStage.REJECTED.value} at {stage.value}: sequence conflict "
                f"for payment to {request.destination}; not retrying"
            )
            return
        logger.warning(
            f"{SubmissionStage.REJECTED.value} at {stage.value}: "
            f"{type(exc).__name__}: {exc.message}"
        )
