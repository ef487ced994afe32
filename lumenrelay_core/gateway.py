"""
Ledger gateway — the seam between the service and the Horizon HTTP API.

The pipeline depends on the ``LedgerGateway`` protocol, not on aiohttp, so
tests plug in an in-memory ledger and production uses ``HorizonGateway``.

Failure mapping
---------------
    404 on an account read             -> AccountNotFoundError
    400 on an account read             -> ValidationError
    400 on submit with result codes    -> SubmissionRejectedError
    timeout / connection fault / 5xx   -> UpstreamUnavailableError

A Horizon 504 on submit means the outcome is unknown: the transaction may
still be included before its time bound expires.  It is reported as
``UpstreamUnavailableError`` and never as success.

Usage:
    async with HorizonGateway("https://horizon-testnet.stellar.org") as gw:
        snap = await gw.get_account("GABC...")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, runtime_checkable

import aiohttp

from lumenrelay_core.errors import (
    AccountNotFoundError,
    SubmissionRejectedError,
    UpstreamUnavailableError,
    ValidationError,
)
from lumenrelay_core.models import AccountSnapshot, TransactionHistoryEntry

logger = logging.getLogger("lumenrelay.gateway")


@runtime_checkable
class LedgerGateway(Protocol):
    """Read and write operations the service needs from the ledger."""

    async def get_account(self, account_id: str) -> AccountSnapshot:
        """Fetch a fresh snapshot.  Raises AccountNotFoundError on a miss."""
        ...

    async def list_transactions(
        self, account_id: str, limit: int = 50, order: str = "desc",
    ) -> list[TransactionHistoryEntry]:
        ...

    async def submit_transaction(self, envelope_xdr: str) -> dict[str, Any]:
        """Submit a signed envelope and return the ledger's success record."""
        ...

    async def fund_account(self, account_id: str) -> dict[str, Any]:
        ...


class HorizonGateway:
    """``LedgerGateway`` backed by a Horizon server over ``aiohttp``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        friendbot_url: str = "",
        session: aiohttp.ClientSession | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.friendbot_url = friendbot_url
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    # ── lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"Accept": "application/json"},
            )

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> HorizonGateway:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ── reads ────────────────────────────────────────────────────

    async def get_account(self, account_id: str) -> AccountSnapshot:
        status, body = await self._request(
            "GET", f"{self.base_url}/accounts/{account_id}", operation="get_account",
        )
        if status == 404:
            raise AccountNotFoundError(account_id)
        if status == 400:
            raise self._bad_read(body, "get_account")
        self._raise_for_upstream(status, body, "get_account")
        return AccountSnapshot.from_horizon(body)

    async def list_transactions(
        self, account_id: str, limit: int = 50, order: str = "desc",
    ) -> list[TransactionHistoryEntry]:
        status, body = await self._request(
            "GET",
            f"{self.base_url}/accounts/{account_id}/transactions",
            params={"limit": str(limit), "order": order},
            operation="list_transactions",
        )
        if status == 404:
            raise AccountNotFoundError(account_id)
        if status == 400:
            raise self._bad_read(body, "list_transactions")
        self._raise_for_upstream(status, body, "list_transactions")
        records = body.get("_embedded", {}).get("records", [])
        return [TransactionHistoryEntry.from_horizon(r) for r in records]

    # ── writes ───────────────────────────────────────────────────

    async def submit_transaction(self, envelope_xdr: str) -> dict[str, Any]:
        status, body = await self._request(
            "POST",
            f"{self.base_url}/transactions",
            data={"tx": envelope_xdr},
            operation="submit_transaction",
        )
        if status == 400:
            codes = body.get("extras", {}).get("result_codes", {})
            raise SubmissionRejectedError(
                codes.get("transaction"),
                codes.get("operations", []) or [],
                detail=body.get("detail"),
            )
        if status == 504:
            logger.warning("Horizon timed out on submit; outcome unknown until the time bound passes")
        self._raise_for_upstream(status, body, "submit_transaction")
        return body

    async def fund_account(self, account_id: str) -> dict[str, Any]:
        """Ask the test network's friendbot to create and fund an account."""
        if not self.friendbot_url:
            raise UpstreamUnavailableError("No friendbot configured", operation="fund_account")
        status, body = await self._request(
            "GET", self.friendbot_url, params={"addr": account_id}, operation="fund_account",
        )
        self._raise_for_upstream(status, body, "fund_account")
        return body

    # ── internals ────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        params: dict[str, str] | None = None,
        data: dict[str, str] | None = None,
    ) -> tuple[int, dict[str, Any]]:
        if self._session is None:
            await self.start()
        assert self._session is not None
        try:
            async with self._session.request(
                method, url, params=params, data=data, timeout=self._timeout,
            ) as resp:
                try:
                    body = await resp.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError):
                    body = {}
                return resp.status, body if isinstance(body, dict) else {}
        except asyncio.TimeoutError as exc:
            logger.warning(f"{operation} timed out after {self._timeout.total}s")
            raise UpstreamUnavailableError(
                f"Ledger service timed out during {operation}", operation=operation,
            ) from exc
        except aiohttp.ClientError as exc:
            logger.warning(f"{operation} failed: {exc}")
            raise UpstreamUnavailableError(
                f"Ledger service unreachable during {operation}", operation=operation,
            ) from exc

    @staticmethod
    def _bad_read(body: dict[str, Any], operation: str) -> ValidationError:
        """Horizon answers 400 on a read when the account id itself is malformed."""
        detail = body.get("detail") or body.get("title") or "Bad Request"
        return ValidationError(f"Ledger service rejected {operation}: {detail}", field="accountId")

    @staticmethod
    def _raise_for_upstream(status: int, body: dict[str, Any], operation: str) -> None:
        if 200 <= status < 300:
            return
        detail = body.get("title") or body.get("detail") or f"HTTP {status}"
        raise UpstreamUnavailableError(
            f"Ledger service error during {operation}: {detail}", operation=operation,
        )
