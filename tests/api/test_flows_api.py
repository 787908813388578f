"""
Tests for the /flows REST endpoints.

The router is mounted on a bare app whose lifespan connects a local wallet
and shuts the manager down; the network is scripted.
"""

import time
from contextlib import asynccontextmanager

import pytest
from eth_account import Account
from eth_utils import to_hex
from fastapi import FastAPI
from fastapi.testclient import TestClient

from txflow.api import flows
from txflow.core.flow import FlowConfig, InMemoryTransactionQueue, PreparedTransaction, TransactionFlowManager
from txflow.core.wallet import LocalAccountWallet

from conftest import ASSET_ADDRESS, CHAIN_ID, TEST_ADDRESS, TEST_PRIVATE_KEY, FakeNetworkClient


def flow_body(**overrides):
    body = {
        "type": "lending_supply",
        "protocol": "aave",
        "action": "supply",
        "from": TEST_ADDRESS,
        "chainId": CHAIN_ID,
        "params": {"asset": ASSET_ADDRESS, "amount": "1000000"},
        "metadata": {"description": "Supply USDC", "userId": "user-1"},
    }
    body.update(overrides)
    return body


@pytest.fixture
def client(builder, broadcaster, network):
    wallet = LocalAccountWallet(TEST_PRIVATE_KEY, CHAIN_ID, network)
    manager = TransactionFlowManager(
        builder,
        broadcaster,
        queue=InMemoryTransactionQueue(max_size=2),
        wallet=wallet,
        config=FlowConfig(auto_retry=False, enable_batching=False),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await wallet.connect()
        yield
        await manager.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.include_router(flows.router)
    app.dependency_overrides[flows.get_flow_manager] = lambda: manager

    with TestClient(app) as c:
        yield c


def wait_for_status(client: TestClient, flow_id: str, status: str, timeout: float = 2.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/flows/{flow_id}").json()
        if body["status"] == status or time.monotonic() > deadline:
            return body
        time.sleep(0.01)


# =============================================================================
# Creation and queries
# =============================================================================

class TestCreateFlow:

    def test_create_returns_prepared_flow(self, client: TestClient):
        response = client.post("/flows", json=flow_body())
        assert response.status_code == 201

        data = response.json()
        assert data["status"] == "awaiting_confirmation"
        assert data["preparedTx"]["from"] == TEST_ADDRESS
        assert data["preparedTx"]["nonce"] == 0
        assert data["request"]["metadata"]["userId"] == "user-1"

    def test_client_supplied_request_id(self, client: TestClient):
        data = client.post("/flows", json=flow_body(id="req_client_1")).json()
        assert data["request"]["id"] == "req_client_1"

    def test_validation_failure(self, client: TestClient):
        response = client.post("/flows", json=flow_body(params={"asset": "0x0", "amount": "0"}))
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "VALIDATION_FAILED"

    def test_unregistered_protocol(self, client: TestClient):
        response = client.post("/flows", json=flow_body(protocol="unknown"))
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "PROTOCOL_NOT_REGISTERED"

    def test_network_failure(self, client: TestClient, network: FakeNetworkClient):
        network.nonce_error = ConnectionError("connection refused")
        response = client.post("/flows", json=flow_body())

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["code"] == "NETWORK_ERROR"
        assert detail["recoverable"] is True
        assert client.get(f"/flows/{detail['details']['flow_id']}").json()["status"] == "failed"

    def test_unknown_flow(self, client: TestClient):
        response = client.get("/flows/flow_missing")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "FLOW_NOT_FOUND"

    def test_user_flows_and_statistics(self, client: TestClient):
        first = client.post("/flows", json=flow_body()).json()
        client.post("/flows", json=flow_body())
        client.post(f"/flows/{first['id']}/cancel")

        data = client.get("/flows/users/user-1").json()
        assert data["total"] == 2

        cancelled = client.get("/flows/users/user-1", params={"status": "cancelled"}).json()
        assert [f["id"] for f in cancelled["flows"]] == [first["id"]]

        stats = client.get("/flows/statistics").json()
        assert stats["total"] == 2
        assert stats["cancelled"] == 1
        assert stats["pending"] == 1
        assert stats["byType"] == {"lending_supply": 2}


class TestQueue:

    def test_queue_accepts_until_full(self, client: TestClient):
        first = client.post("/flows/queue", json=flow_body())
        assert first.status_code == 202
        assert first.json()["queued"] == 1

        client.post("/flows/queue", json=flow_body())
        third = client.post("/flows/queue", json=flow_body())
        assert third.status_code == 429
        assert third.json()["detail"]["code"] == "QUEUE_FULL"

    def test_duplicate_request_id(self, client: TestClient):
        client.post("/flows/queue", json=flow_body(id="req_dup"))
        response = client.post("/flows/queue", json=flow_body(id="req_dup"))
        assert response.status_code == 409


# =============================================================================
# Confirmation, cancellation, retry
# =============================================================================

class TestConfirmation:

    def test_confirmation_request(self, client: TestClient):
        flow = client.post("/flows", json=flow_body()).json()
        data = client.post(f"/flows/{flow['id']}/confirmation-request").json()

        assert data["flowId"] == flow["id"]
        assert data["estimatedGas"] == 120_000
        assert data["estimatedCost"] == "0.002520"
        assert data["metadata"]["description"] == "Supply USDC"

    def test_approve_completes(self, client: TestClient):
        flow = client.post("/flows", json=flow_body()).json()

        response = client.post(f"/flows/{flow['id']}/confirmation", json={"approved": True})
        assert response.status_code == 200
        assert response.json()["status"] in ("signing", "broadcasting", "confirming", "completed")

        data = wait_for_status(client, flow["id"], "completed")
        assert data["status"] == "completed"
        assert data["receipt"]["status"] == "success"

    def test_reject(self, client: TestClient):
        flow = client.post("/flows", json=flow_body()).json()

        data = client.post(
            f"/flows/{flow['id']}/confirmation",
            json={"approved": False, "rejectionReason": "Not now"},
        ).json()
        assert data["status"] == "cancelled"
        assert data["error"]["message"] == "Not now"

    def test_presigned_transaction(self, client: TestClient):
        flow = client.post("/flows", json=flow_body()).json()
        prepared = PreparedTransaction.from_dict(flow["preparedTx"])
        signed = Account.from_key(TEST_PRIVATE_KEY).sign_transaction(prepared.to_signable())

        response = client.post(f"/flows/{flow['id']}/confirmation", json={
            "approved": True,
            "signedTransaction": {
                "rawTransaction": to_hex(signed.raw_transaction),
                "hash": to_hex(signed.hash),
                "from": TEST_ADDRESS,
                "nonce": prepared.nonce,
                "chainId": CHAIN_ID,
            },
        })
        assert response.status_code == 200

        data = wait_for_status(client, flow["id"], "completed")
        assert data["status"] == "completed"
        assert data["txHash"] == to_hex(signed.hash)

    def test_confirm_twice_conflicts(self, client: TestClient):
        flow = client.post("/flows", json=flow_body()).json()
        client.post(f"/flows/{flow['id']}/confirmation", json={"approved": False})

        response = client.post(f"/flows/{flow['id']}/confirmation", json={"approved": True})
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "INVALID_STATE"


class TestCancelAndRetry:

    def test_cancel_with_reason(self, client: TestClient):
        flow = client.post("/flows", json=flow_body()).json()
        data = client.post(f"/flows/{flow['id']}/cancel", json={"reason": "Wrong asset"}).json()

        assert data["status"] == "cancelled"
        assert data["error"]["code"] == "CANCELLED"
        assert data["error"]["message"] == "Wrong asset"

    def test_cancel_terminal_conflicts(self, client: TestClient):
        flow = client.post("/flows", json=flow_body()).json()
        client.post(f"/flows/{flow['id']}/cancel")

        response = client.post(f"/flows/{flow['id']}/cancel")
        assert response.status_code == 409

    def test_retry_after_broadcast_failure(self, client: TestClient, network: FakeNetworkClient):
        network.send_errors.append(ConnectionError("connection refused"))
        flow = client.post("/flows", json=flow_body()).json()
        client.post(f"/flows/{flow['id']}/confirmation", json={"approved": True})

        failed = wait_for_status(client, flow["id"], "failed")
        assert failed["error"]["code"] == "BROADCAST_FAILED"

        response = client.post(f"/flows/{flow['id']}/retry")
        assert response.status_code == 200
        data = response.json()
        assert data["attempt"] == 2
        assert data["status"] == "awaiting_confirmation"
        assert data["previousAttempts"][0]["error"]["code"] == "BROADCAST_FAILED"

    def test_retry_pending_flow_conflicts(self, client: TestClient):
        flow = client.post("/flows", json=flow_body()).json()
        response = client.post(f"/flows/{flow['id']}/retry")
        assert response.status_code == 409
