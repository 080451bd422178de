# tests/test_x402_api.py
"""
End-to-end tests of the gateway HTTP API.
"""
import base64
import json
from unittest.mock import MagicMock, patch

import pytest
from requests.exceptions import RequestException

from app.core.config import settings
from app.x402.gateway import reset_gateway

from tests.conftest import OUTSIDER, PAYER, RECIPIENT, TOKEN, tx_hash

API = settings.API_V1_STR


def ask(client, **body):
    payload = {"payer": PAYER, "query": "top KOLs in DeFi", "action": "kol-score"}
    payload.update(body)
    return client.post(f"{API}/x402/action-request", json=payload)


def challenge_of(response):
    assert response.status_code == 402
    return response.json()["x402"]


def proof_from(challenge, n=1, **overrides):
    accept = challenge["accepts"][0]
    proof = {
        "requestId": challenge["requestId"],
        "txHash": tx_hash(n),
        "payer": PAYER,
        "tokenAddress": accept["tokenAddress"],
        "recipient": accept["recipient"],
        "amount": accept["amount"],
    }
    proof.update(overrides)
    return proof


def stray_proof(request_id="x402_gone", n=1):
    return {
        "requestId": request_id,
        "txHash": tx_hash(n),
        "tokenAddress": TOKEN,
        "recipient": RECIPIENT,
        "amount": "0.05",
    }


def record_transfer(client, challenge, n=1, status="success"):
    accept = challenge["accepts"][0]
    response = client.post(f"{API}/records", json={
        "txHash": tx_hash(n),
        "token": accept["tokenAddress"],
        "recipient": accept["recipient"],
        "amount": accept["amount"],
        "status": status,
        "type": "x402-payment",
        "payer": PAYER,
        "requestId": challenge["requestId"],
    })
    assert response.status_code == 200
    return response.json()["record"]


class TestHealth:
    """Test the root endpoint."""

    def test_root(self, client):
        """Health check reports ok and the version."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "version" in response.json()


class TestActionRequest:
    """Test the catalog action flow."""

    def test_challenge_then_unlock(self, client):
        """402 challenge, on-chain record, then 200 with the result."""
        challenge = challenge_of(ask(client))
        accept = challenge["accepts"][0]
        assert accept["amount"] == settings.X402_PRICE
        assert accept["scheme"] == settings.X402_SCHEME
        assert accept["decimals"] == settings.X402_TOKEN_DECIMALS

        record_transfer(client, challenge)
        response = ask(client, requestId=challenge["requestId"], paymentProof=proof_from(challenge))

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["mode"] == "x402"
        assert body["reused"] is False
        assert body["payment"]["txHash"] == tx_hash(1)
        assert body["result"]["topKOLs"]

        settlement = json.loads(base64.b64decode(response.headers["X-PAYMENT-RESPONSE"]))
        assert settlement["success"] is True
        assert settlement["requestId"] == challenge["requestId"]
        assert settlement["txHash"] == tx_hash(1)

    def test_replay_is_reused(self, client):
        """A second proof for a paid request gets the same result."""
        challenge = challenge_of(ask(client))
        record_transfer(client, challenge)
        first = ask(client, requestId=challenge["requestId"], paymentProof=proof_from(challenge)).json()
        second = ask(client, requestId=challenge["requestId"], paymentProof=proof_from(challenge)).json()

        assert second["reused"] is True
        assert second["result"] == first["result"]
        assert second["payment"] == first["payment"]

    def test_proof_in_x_payment_header(self, client):
        """The proof may travel base64-encoded in X-PAYMENT."""
        challenge = challenge_of(ask(client))
        record_transfer(client, challenge)
        header = base64.b64encode(json.dumps(proof_from(challenge)).encode("utf-8")).decode("ascii")

        response = client.post(
            f"{API}/x402/action-request",
            json={"payer": PAYER, "query": "top KOLs in DeFi"},
            headers={"X-PAYMENT": header},
        )

        assert response.status_code == 200
        assert response.json()["requestId"] == challenge["requestId"]

    def test_proof_not_found_keeps_challenge(self, client):
        """Without a ledger record the caller gets the same challenge back."""
        challenge = challenge_of(ask(client))
        response = ask(client, requestId=challenge["requestId"], paymentProof=proof_from(challenge))

        assert response.status_code == 402
        assert response.json()["reason"] == "proof not found in transfer records"
        assert response.json()["x402"]["requestId"] == challenge["requestId"]

        pending = client.get(f"{API}/x402/requests", params={"requestId": challenge["requestId"]}).json()
        assert pending["items"][0]["status"] == "pending"

    def test_amount_mismatch(self, client):
        """A proof declaring another amount is refused."""
        challenge = challenge_of(ask(client))
        record_transfer(client, challenge)
        response = ask(client, requestId=challenge["requestId"], paymentProof=proof_from(challenge, amount="0.5"))

        assert response.status_code == 402
        assert response.json()["reason"] == "amount mismatch"

    def test_force_expire(self, client):
        """The debug flag expires the request and reports it."""
        challenge = challenge_of(ask(client))
        record_transfer(client, challenge)
        response = ask(
            client,
            requestId=challenge["requestId"],
            paymentProof=proof_from(challenge),
            debugForceExpire=True,
        )

        assert response.status_code == 402
        assert response.json()["reason"] == "request expired"
        listing = client.get(f"{API}/x402/requests", params={"status": "expired"}).json()
        assert listing["total"] == 1

    def test_unknown_request_regenerates(self, client):
        """A proof for an unknown request yields a fresh challenge."""
        response = ask(client, requestId="x402_gone", paymentProof=stray_proof())

        challenge = challenge_of(response)
        assert challenge["requestId"] != "x402_gone"
        assert response.json()["reason"] == "request not found, regenerated"

    def test_proof_with_unknown_field(self, client):
        """Proofs carrying fields outside the schema are refused outright."""
        challenge = challenge_of(ask(client))
        record_transfer(client, challenge)
        response = ask(
            client, requestId=challenge["requestId"], paymentProof=proof_from(challenge, bogusField="x")
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "invalid_payment_proof"
        assert body["reason"].startswith("invalid payment proof: ")
        assert "bogusField" in body["reason"]
        status_body = client.get(f"{API}/x402/requests/{challenge['requestId']}").json()
        assert status_body["status"] == "pending"

    def test_proof_with_wrong_type(self, client):
        """A non-scalar amount is an invalid proof, not a mismatch."""
        challenge = challenge_of(ask(client))
        record_transfer(client, challenge)
        response = ask(client, requestId=challenge["requestId"], paymentProof=proof_from(challenge, amount=[1]))

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_payment_proof"
        assert "amount" in response.json()["reason"]

    def test_proof_missing_field(self, client):
        """Every paid field must be declared."""
        challenge = challenge_of(ask(client))
        proof = proof_from(challenge)
        del proof["tokenAddress"]

        response = ask(client, requestId=challenge["requestId"], paymentProof=proof)

        assert response.status_code == 400
        assert "tokenAddress" in response.json()["reason"]

    def test_garbled_x_payment_header(self, client):
        """An X-PAYMENT header that is not base64 JSON is a 400."""
        response = client.post(
            f"{API}/x402/action-request",
            json={"payer": PAYER, "query": "top KOLs in DeFi"},
            headers={"X-PAYMENT": base64.b64encode(b"not json").decode("ascii")},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_payment_proof"

    def test_query_required(self, client):
        """Catalog actions other than transfers need a query."""
        response = ask(client, query="  ")
        assert response.status_code == 400
        assert response.json()["error"] == "query_required"

    def test_unsupported_action(self, client):
        """Unknown actions are a 400."""
        response = ask(client, action="teleport")
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_action"

    def test_reactive_stop_orders(self, client):
        """Reactive orders are priced for the reactive agent and echo their params."""
        response = ask(
            client,
            action="reactive-stop-orders",
            actionParams={"symbol": "eth", "takeProfit": 4000, "stopLoss": 3000},
        )
        challenge = challenge_of(response)
        assert challenge["accepts"][0]["amount"] == settings.X402_REACTIVE_PRICE
        assert challenge["accepts"][0]["recipient"] == settings.X402_REACTIVE_RECIPIENT

        record_transfer(client, challenge)
        body = ask(
            client,
            action="reactive-stop-orders",
            requestId=challenge["requestId"],
            paymentProof=proof_from(challenge),
        ).json()
        assert body["result"]["orderPlan"]["symbol"] == "ETH"

    def test_kol_score_alias(self, client):
        """The legacy route answers like action-request."""
        response = client.post(f"{API}/x402/kol-score", json={"payer": PAYER, "query": "q"})
        assert response.status_code == 402


class TestTransferIntent:
    """Test caller-priced transfers."""

    def transfer(self, client, **body):
        payload = {"payer": PAYER, "recipient": RECIPIENT, "amount": "0.20"}
        payload.update(body)
        return client.post(f"{API}/x402/transfer-intent", json=payload)

    def test_scope_violation_is_403(self, client):
        """An off-list recipient is refused with evidence and policy."""
        response = self.transfer(client, recipient=OUTSIDER, amount="0.05")

        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "scope_violation"
        assert body["reason"] == "Recipient is outside allowed scope."
        assert body["evidence"]["actualRecipient"] == OUTSIDER
        assert "allowedRecipients" in body["policy"]

        failures = client.get(f"{API}/x402/policy-failures", params={"code": "scope_violation"}).json()
        assert failures["total"] == 1
        assert failures["items"][0]["recipient"] == OUTSIDER
        assert failures["stats"]["byCode"] == {"scope_violation": 1}

    def test_over_limit_per_tx(self, client):
        """An amount over maxPerTx is refused."""
        response = self.transfer(client, amount="0.25")
        assert response.status_code == 403
        assert response.json()["evidence"] == {"actualAmount": 0.25, "maxPerTx": 0.2}

    def test_daily_budget(self, client):
        """The fourth 0.20 transfer of the day is over budget."""
        for n in range(1, 4):
            challenge = challenge_of(self.transfer(client))
            record_transfer(client, challenge, n)
            paid = self.transfer(client, requestId=challenge["requestId"], paymentProof=proof_from(challenge, n))
            assert paid.status_code == 200
            assert paid.json()["result"]["transfer"]["amount"] == "0.20"

        response = self.transfer(client)
        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "over_limit_daily"
        assert body["evidence"]["spentToday"] == 0.6
        assert body["evidence"]["dailyLimit"] == 0.6

    def test_same_terms_reuse_challenge(self, client):
        """Asking again with identical terms returns the outstanding challenge."""
        first = challenge_of(self.transfer(client, amount="0.05"))
        again = challenge_of(self.transfer(client, requestId=first["requestId"], amount="0.05"))
        assert again["requestId"] == first["requestId"]

    def test_changed_amount_goes_through_policy(self, client):
        """A known requestId does not carry a larger amount past maxPerTx."""
        first = challenge_of(self.transfer(client, amount="0.05"))

        response = self.transfer(client, requestId=first["requestId"], amount="0.25")

        assert response.status_code == 403
        assert response.json()["error"] == "over_limit_per_tx"
        assert response.json()["evidence"]["actualAmount"] == 0.25

    def test_changed_amount_issues_new_challenge(self, client):
        """An allowed change of terms gets its own request."""
        first = challenge_of(self.transfer(client, amount="0.05"))

        second = challenge_of(self.transfer(client, requestId=first["requestId"], amount="0.10"))

        assert second["requestId"] != first["requestId"]
        assert second["accepts"][0]["amount"] == "0.10"
        status_body = client.get(f"{API}/x402/requests/{first['requestId']}").json()
        assert status_body["status"] == "pending"

    def test_missing_fields(self, client):
        """Recipient and amount are required without a proof."""
        response = self.transfer(client, amount="")
        assert response.status_code == 400
        assert response.json()["error"] == "missing_fields"

    def test_insufficient_funds_simulation(self, client):
        """The demo flag fails with 402 and logs the failure."""
        response = self.transfer(client, simulateInsufficientFunds=True)

        assert response.status_code == 402
        assert response.json()["error"] == "insufficient_funds"
        failures = client.get(f"{API}/x402/policy-failures").json()
        assert failures["items"][0]["code"] == "insufficient_funds"

    def test_proof_for_unknown_request(self, client):
        """Proofs for unknown requests are a plain 402."""
        response = self.transfer(
            client, requestId="x402_gone", paymentProof=stray_proof()
        )
        assert response.status_code == 402
        assert response.json() == {"error": "payment_required", "reason": "request not found"}


class TestRequestLookup:
    """Test single-request status and evidence."""

    def test_status_pending_then_paid(self, client):
        """Status moves from pending to paid with the paying hash."""
        challenge = challenge_of(ask(client))
        url = f"{API}/x402/requests/{challenge['requestId']}"

        pending = client.get(url).json()
        assert pending["ok"] is True
        assert pending["status"] == "pending"
        assert pending["action"] == "kol-score"
        assert pending["paidAt"] is None
        assert pending["paymentTxHash"] == ""

        record_transfer(client, challenge)
        ask(client, requestId=challenge["requestId"], paymentProof=proof_from(challenge))

        paid = client.get(url).json()
        assert paid["status"] == "paid"
        assert paid["paidAt"] >= paid["createdAt"]
        assert paid["paymentTxHash"] == tx_hash(1)

    def test_status_reports_expiry(self, client, monkeypatch):
        """A pending request past expiresAt reads as expired."""
        monkeypatch.setattr(settings, "X402_REQUEST_TTL_SECONDS", -1)
        challenge = challenge_of(ask(client))

        body = client.get(f"{API}/x402/requests/{challenge['requestId']}").json()

        assert body["status"] == "expired"
        listing = client.get(f"{API}/x402/requests", params={"status": "expired"}).json()
        assert listing["total"] == 1

    def test_evidence_for_paid_request(self, client):
        """Evidence bundles the request, the payment and its ledger record."""
        challenge = challenge_of(ask(client))
        record_transfer(client, challenge)
        ask(client, requestId=challenge["requestId"], paymentProof=proof_from(challenge))

        body = client.get(f"{API}/x402/requests/{challenge['requestId']}/evidence").json()

        assert body["ok"] is True
        assert body["request"]["requestId"] == challenge["requestId"]
        assert body["request"]["status"] == "paid"
        assert body["payment"] == {
            "txHash": tx_hash(1),
            "tokenAddress": challenge["accepts"][0]["tokenAddress"],
            "recipient": challenge["accepts"][0]["recipient"],
            "amount": challenge["accepts"][0]["amount"],
        }
        assert body["transferRecord"]["txHash"] == tx_hash(1)
        assert body["transferRecord"]["status"] == "success"
        assert body["policy"]["decision"] == "allowed"
        assert body["identity"]["registry"] == settings.X402_IDENTITY_REGISTRY

    def test_evidence_for_pending_request(self, client):
        """An unpaid request has no payment hash and no ledger record."""
        challenge = challenge_of(ask(client))

        body = client.get(f"{API}/x402/requests/{challenge['requestId']}/evidence").json()

        assert body["payment"]["txHash"] == ""
        assert body["payment"]["amount"] == challenge["accepts"][0]["amount"]
        assert body["transferRecord"] is None

    def test_unknown_request_is_404(self, client):
        """Both lookups answer 404 for ids never issued."""
        for path in ("x402_missing", "x402_missing/evidence"):
            response = client.get(f"{API}/x402/requests/{path}")
            assert response.status_code == 404
            assert response.json() == {"error": "not_found", "reason": "request not found"}


class TestRemoteLedgerFailures:
    """Test how indexer failures surface through the API."""

    @pytest.fixture
    def remote_client(self, client, monkeypatch):
        monkeypatch.setattr(settings, "X402_LEDGER_API_URL", "http://indexer.local/")
        reset_gateway()
        return client

    @patch("app.services.ledger_api.requests.get")
    def test_unparsable_records_are_502(self, mock_get, remote_client):
        """A non-JSON indexer answer is ledger_unavailable, not a crash."""
        mock_response = MagicMock()
        mock_response.json.side_effect = ValueError("Expecting value")
        mock_get.return_value = mock_response

        response = remote_client.get(f"{API}/records")

        assert response.status_code == 502
        assert response.json()["error"] == "ledger_unavailable"

    @patch("app.services.ledger_api.requests.get")
    def test_unparsable_answer_during_verification(self, mock_get, remote_client):
        """Proof verification reports 502 and leaves the request pending."""
        mock_response = MagicMock()
        mock_response.json.side_effect = ValueError("Expecting value")
        mock_get.return_value = mock_response
        challenge = challenge_of(ask(remote_client))

        response = ask(remote_client, requestId=challenge["requestId"], paymentProof=proof_from(challenge))

        assert response.status_code == 502
        assert response.json()["error"] == "ledger_unavailable"
        status_body = remote_client.get(f"{API}/x402/requests/{challenge['requestId']}").json()
        assert status_body["status"] == "pending"

    @patch("app.services.ledger_api.requests.get")
    def test_unreachable_indexer_during_evidence(self, mock_get, remote_client):
        """Evidence for a paid request needs the indexer; without it the answer is 502."""
        challenge = challenge_of(ask(remote_client))
        accept = challenge["accepts"][0]
        mock_response = MagicMock()
        mock_response.json.return_value = {"items": [{
            "txHash": tx_hash(1),
            "token": accept["tokenAddress"],
            "recipient": accept["recipient"],
            "amount": accept["amount"],
            "status": "success",
        }]}
        mock_get.return_value = mock_response
        paid = ask(remote_client, requestId=challenge["requestId"], paymentProof=proof_from(challenge))
        assert paid.status_code == 200

        mock_get.side_effect = RequestException("connection refused")
        response = remote_client.get(f"{API}/x402/requests/{challenge['requestId']}/evidence")

        assert response.status_code == 502
        assert response.json()["error"] == "ledger_unavailable"


class TestPolicyEndpoints:
    """Test policy administration."""

    def test_get_defaults(self, client):
        """The policy starts from configured defaults."""
        body = client.get(f"{API}/x402/policy").json()
        assert body["ok"] is True
        assert body["policy"]["maxPerTx"] == settings.X402_POLICY_MAX_PER_TX
        assert body["policy"]["revokedPayers"] == []

    def test_set_sanitizes(self, client):
        """Bad fields fall back to defaults; good ones are kept."""
        response = client.post(f"{API}/x402/policy", json={
            "maxPerTx": 0.1,
            "dailyLimit": -3,
            "allowedRecipients": f"{RECIPIENT},junk",
        })
        policy = response.json()["policy"]
        assert policy["maxPerTx"] == 0.1
        assert policy["dailyLimit"] == settings.X402_POLICY_DAILY_LIMIT
        assert policy["allowedRecipients"] == [RECIPIENT]
        assert client.get(f"{API}/x402/policy").json()["policy"] == policy

    def test_revoke_blocks_payer(self, client):
        """A revoked payer is refused until unrevoked."""
        revoked = client.post(f"{API}/x402/policy/revoke", json={"payer": PAYER})
        assert revoked.status_code == 200
        assert revoked.json()["action"] == "revoked"
        assert PAYER in revoked.json()["policy"]["revokedPayers"]

        response = ask(client)
        assert response.status_code == 403
        assert response.json()["error"] == "payer_revoked"

        restored = client.post(f"{API}/x402/policy/unrevoke", json={"payer": PAYER})
        assert restored.json()["action"] == "unrevoked"
        assert ask(client).status_code == 402

    def test_revoke_invalid_payer(self, client):
        """Malformed addresses are a 400."""
        response = client.post(f"{API}/x402/policy/revoke", json={"payer": "bob"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_payer"


class TestListings:
    """Test read-only views."""

    def test_requests_and_dashboard(self, client):
        """Requests are listed and summarized."""
        paid = challenge_of(ask(client))
        record_transfer(client, paid)
        ask(client, requestId=paid["requestId"], paymentProof=proof_from(paid))
        challenge_of(ask(client, query="another"))

        listing = client.get(f"{API}/x402/requests", params={"status": "paid"}).json()
        assert listing["total"] == 1
        assert listing["items"][0]["paymentTxHash"] == tx_hash(1)
        assert listing["items"][0]["proofVerification"]["mode"] == "ledger_record"

        dashboard = client.get(f"{API}/x402/mapping/latest", params={"limit": 1}).json()
        assert dashboard["kpi"]["paid"] == 1
        assert dashboard["kpi"]["pending"] == 1
        assert dashboard["kpi"]["todaySpend"] == float(settings.X402_PRICE)
        assert len(dashboard["items"]) == 1

    def test_records_and_onchain_feed(self, client):
        """Ledger records list newest first; the feed de-duplicates by hash."""
        challenge = challenge_of(ask(client))
        record_transfer(client, challenge, 1)
        ask(client, requestId=challenge["requestId"], paymentProof=proof_from(challenge, 1))
        client.post(f"{API}/records", json={"txHash": tx_hash(2), "status": "success", "type": "aa-transfer"})

        records = client.get(f"{API}/records").json()
        assert [item["txHash"] for item in records["items"]] == [tx_hash(2), tx_hash(1)]

        feed = client.get(f"{API}/onchain/latest").json()
        assert feed["total"] == 2
        sources = {item["txHash"]: item["source"] for item in feed["items"]}
        assert sources == {tx_hash(1): "x402", tx_hash(2): "aa-transfer"}

    def test_records_limit_clamped(self, client):
        """Listing limits stay within bounds."""
        for n in range(1, 4):
            client.post(f"{API}/records", json={"txHash": tx_hash(n), "status": "success"})
        assert len(client.get(f"{API}/records", params={"limit": 0}).json()["items"]) == 1
        assert len(client.get(f"{API}/records", params={"limit": 999}).json()["items"]) == 3

    def test_capabilities(self, client):
        """The catalog is advertised for agent-to-agent discovery."""
        body = client.get(f"{API}/a2a/capabilities").json()
        assert body["payment"]["standard"] == "x402"
        assert body["payment"]["settlementToken"] == TOKEN
        assert [action["id"] for action in body["actions"]] == [
            "kol-score", "reactive-stop-orders", "transfer-intent"
        ]
