"""
Tests for lumenrelay_core.gateway — HorizonGateway against a fake Horizon.

The fake server is a plain aiohttp application served by
``aiohttp.test_utils.TestServer``; the gateway talks to it over real HTTP.
"""

from __future__ import annotations

import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from stellar_sdk import Keypair

from lumenrelay_core.api import APIServer
from lumenrelay_core.assembler import TransactionAssembler
from lumenrelay_core.config import TESTNET_PASSPHRASE, APIConfig
from lumenrelay_core.custody import KeyCustody
from lumenrelay_core.errors import (
    AccountNotFoundError,
    SubmissionRejectedError,
    UpstreamUnavailableError,
    ValidationError,
)
from lumenrelay_core.gateway import HorizonGateway, LedgerGateway
from lumenrelay_core.models import TransactionHistoryEntry
from lumenrelay_core.pipeline import SubmissionPipeline

from tests.conftest import DESTINATION, ISSUER, MISSING

_ACCOUNT_RECORD = {
    "id": DESTINATION,
    "account_id": DESTINATION,
    "sequence": "4294967296",
    "subentry_count": 1,
    "last_modified_ledger": 123,
    "last_modified_time": "2024-05-01T10:00:00Z",
    "paging_token": DESTINATION,
    "balances": [
        {"balance": "12.5000000", "limit": "1000.0000000", "asset_type": "credit_alphanum4",
         "asset_code": "USD", "asset_issuer": ISSUER},
        {"balance": "99.0000000", "asset_type": "native"},
    ],
    "signers": [{"weight": 1, "key": DESTINATION, "type": "ed25519_public_key"}],
}

_TX_RECORDS = [
    {"id": "b2", "hash": "b2", "ledger": 11, "successful": True,
     "created_at": "2024-05-02T00:00:00Z", "source_account": DESTINATION,
     "fee_charged": "100", "operation_count": 1, "memo_type": "text", "memo": "hi"},
    {"id": "a1", "hash": "a1", "ledger": 10, "successful": False,
     "created_at": "2024-05-01T00:00:00Z", "source_account": DESTINATION,
     "fee_charged": "100", "operation_count": 2, "memo_type": "none"},
]


class _FakeHorizon:
    """Records requests and answers like Horizon does."""

    def __init__(self):
        self.requests: list[tuple[str, str, dict]] = []
        self.submit_status = 200
        self.submit_body: dict = {}
        self.delay = 0.0
        # (status, body) served for every account read when set
        self.account_override: tuple[int, dict] | None = None

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/accounts/{account_id}", self._account)
        app.router.add_get("/accounts/{account_id}/transactions", self._transactions)
        app.router.add_post("/transactions", self._submit)
        app.router.add_get("/friendbot", self._friendbot)
        return app

    async def _account(self, request: web.Request) -> web.Response:
        self.requests.append(("GET", request.path, dict(request.query)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.account_override is not None:
            status, body = self.account_override
            return web.json_response(body, status=status)
        if request.match_info["account_id"] != DESTINATION:
            return web.json_response(
                {"type": "https://stellar.org/horizon-errors/not_found",
                 "title": "Resource Missing", "status": 404},
                status=404,
            )
        return web.json_response(_ACCOUNT_RECORD)

    async def _transactions(self, request: web.Request) -> web.Response:
        self.requests.append(("GET", request.path, dict(request.query)))
        if request.match_info["account_id"] != DESTINATION:
            return web.json_response({"status": 404, "title": "Resource Missing"}, status=404)
        return web.json_response({"_embedded": {"records": _TX_RECORDS}})

    async def _submit(self, request: web.Request) -> web.Response:
        form = await request.post()
        self.requests.append(("POST", request.path, {"tx": form.get("tx")}))
        return web.json_response(self.submit_body, status=self.submit_status)

    async def _friendbot(self, request: web.Request) -> web.Response:
        self.requests.append(("GET", request.path, dict(request.query)))
        return web.json_response({"successful": True, "hash": "f00d"})


@pytest.fixture
def horizon():
    return _FakeHorizon()


def _gateway(server: TestServer, **kw) -> HorizonGateway:
    return HorizonGateway(
        str(server.make_url("/")),
        friendbot_url=str(server.make_url("/friendbot")),
        **kw,
    )


class TestProtocol:
    def test_horizon_gateway_satisfies_protocol(self):
        assert isinstance(HorizonGateway("http://localhost"), LedgerGateway)


class TestGetAccount:
    @pytest.mark.asyncio
    async def test_snapshot(self, horizon):
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                snap = await gw.get_account(DESTINATION)
        assert snap.id == DESTINATION
        assert snap.sequence == 4294967296
        assert snap.subentry_count == 1
        assert snap.last_modified_ledger == 123
        assert [b.asset_type for b in snap.balances] == ["credit_alphanum4", "native"]
        assert snap.balances[0].asset_code == "USD"
        assert snap.balances[0].limit == "1000.0000000"
        assert snap.signers[0].weight == 1

    @pytest.mark.asyncio
    async def test_wallet_details_shape(self, horizon):
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                details = (await gw.get_account(DESTINATION)).to_wallet_details()
        assert details["pagingToken"] == DESTINATION
        assert details["accountSequence"] == "4294967296"
        assert details["lastModifiedTime"] == "2024-05-01T10:00:00Z"
        assert details["balances"][1] == {"asset_type": "native", "balance": "99.0000000"}

    @pytest.mark.asyncio
    async def test_not_found(self, horizon):
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                with pytest.raises(AccountNotFoundError) as info:
                    await gw.get_account(MISSING)
        assert info.value.account_id == MISSING

    @pytest.mark.asyncio
    async def test_timeout_is_upstream_unavailable(self, horizon):
        horizon.delay = 1.0
        async with TestServer(horizon.app()) as server:
            async with _gateway(server, timeout=0.1) as gw:
                with pytest.raises(UpstreamUnavailableError) as info:
                    await gw.get_account(DESTINATION)
        assert info.value.operation == "get_account"

    @pytest.mark.asyncio
    async def test_connection_refused_is_upstream_unavailable(self):
        async with HorizonGateway("http://127.0.0.1:1", timeout=2) as gw:
            with pytest.raises(UpstreamUnavailableError):
                await gw.get_account(DESTINATION)

    @pytest.mark.asyncio
    async def test_bad_request_is_caller_fault(self, horizon):
        horizon.account_override = (400, {
            "type": "https://stellar.org/horizon-errors/bad_request",
            "title": "Bad Request",
            "status": 400,
            "detail": "The request you sent was invalid in some way.",
        })
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                with pytest.raises(ValidationError) as info:
                    await gw.get_account("not-an-account")
        assert info.value.http_status == 400
        assert info.value.field == "accountId"

    @pytest.mark.asyncio
    async def test_record_without_account_fields(self, horizon):
        horizon.account_override = (200, {"_embedded": {"records": _TX_RECORDS}})
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                with pytest.raises(UpstreamUnavailableError) as info:
                    await gw.get_account(DESTINATION)
        assert info.value.operation == "get_account"


class TestListTransactions:
    @pytest.mark.asyncio
    async def test_records_and_query(self, horizon):
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                entries = await gw.list_transactions(DESTINATION, limit=10)
        assert [e.hash for e in entries] == ["b2", "a1"]
        assert entries[0].memo == "hi"
        assert entries[0].fee_paid == "100"
        assert entries[1].successful is False
        assert horizon.requests[-1][2] == {"limit": "10", "order": "desc"}

    @pytest.mark.asyncio
    async def test_not_found(self, horizon):
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                with pytest.raises(AccountNotFoundError):
                    await gw.list_transactions(MISSING)


class TestSubmit:
    @pytest.mark.asyncio
    async def test_success_posts_envelope(self, horizon):
        horizon.submit_body = {"hash": "abc", "ledger": 77, "envelope_xdr": "AAAA", "successful": True}
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                body = await gw.submit_transaction("AAAA")
        assert body["hash"] == "abc"
        assert horizon.requests[-1] == ("POST", "/transactions", {"tx": "AAAA"})

    @pytest.mark.asyncio
    async def test_rejection_carries_result_codes(self, horizon):
        horizon.submit_status = 400
        horizon.submit_body = {
            "type": "https://stellar.org/horizon-errors/transaction_failed",
            "title": "Transaction Failed",
            "status": 400,
            "detail": "The transaction failed when submitted to the stellar network.",
            "extras": {"result_codes": {"transaction": "tx_failed", "operations": ["op_no_trust"]}},
        }
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                with pytest.raises(SubmissionRejectedError) as info:
                    await gw.submit_transaction("AAAA")
        assert info.value.transaction_code == "tx_failed"
        assert info.value.operation_codes == ("op_no_trust",)
        assert "trust line" in info.value.message

    @pytest.mark.asyncio
    async def test_bad_sequence(self, horizon):
        horizon.submit_status = 400
        horizon.submit_body = {"extras": {"result_codes": {"transaction": "tx_bad_seq"}}}
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                with pytest.raises(SubmissionRejectedError) as info:
                    await gw.submit_transaction("AAAA")
        assert info.value.is_sequence_conflict

    @pytest.mark.asyncio
    async def test_horizon_timeout_is_not_success(self, horizon):
        horizon.submit_status = 504
        horizon.submit_body = {"title": "Timeout", "status": 504}
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                with pytest.raises(UpstreamUnavailableError) as info:
                    await gw.submit_transaction("AAAA")
        assert "Timeout" in info.value.message


class TestFundAccount:
    @pytest.mark.asyncio
    async def test_friendbot_called_with_address(self, horizon):
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                await gw.fund_account(MISSING)
        assert horizon.requests[-1] == ("GET", "/friendbot", {"addr": MISSING})

    @pytest.mark.asyncio
    async def test_no_friendbot_configured(self):
        async with HorizonGateway("http://127.0.0.1:1") as gw:
            with pytest.raises(UpstreamUnavailableError):
                await gw.fund_account(MISSING)


class TestHistoryRecords:
    def test_malformed_record(self):
        with pytest.raises(UpstreamUnavailableError) as info:
            TransactionHistoryEntry.from_horizon({"hash": "h", "operation_count": "many"})
        assert info.value.operation == "list_transactions"


class TestWalletReadsOverHorizon:
    """The API's read routes backed by a real HorizonGateway."""

    @staticmethod
    def _api_client(gw: HorizonGateway) -> TestClient:
        custody = KeyCustody(Keypair.random())
        pipeline = SubmissionPipeline(gw, custody, TransactionAssembler(TESTNET_PASSPHRASE))
        app = APIServer(pipeline, gw, custody, api_config=APIConfig(cors_origins=[])).build_app()
        return TestClient(TestServer(app))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("account_id", ["not-an-account", DESTINATION + "/transactions"])
    async def test_malformed_account_id_is_400(self, horizon, account_id):
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                async with self._api_client(gw) as client:
                    resp = await client.post("/api/wallet/details", json={"accountId": account_id})
                    assert resp.status == 400
                    data = await resp.json()
        assert data["field"] == "accountId"
        assert horizon.requests == []

    @pytest.mark.asyncio
    async def test_wallet_details(self, horizon):
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                async with self._api_client(gw) as client:
                    resp = await client.post("/api/wallet/details", json={"accountId": DESTINATION})
                    assert resp.status == 200
                    data = await resp.json()
        assert data["pagingToken"] == DESTINATION
        assert data["accountSequence"] == "4294967296"

    @pytest.mark.asyncio
    async def test_unexpected_ledger_body_is_503(self, horizon):
        horizon.account_override = (200, {"unexpected": True})
        async with TestServer(horizon.app()) as server:
            async with _gateway(server) as gw:
                async with self._api_client(gw) as client:
                    resp = await client.post("/api/wallet/details", json={"accountId": DESTINATION})
                    assert resp.status == 503
                    data = await resp.json()
        assert data["error"] == "Malformed account record from the ledger service"
