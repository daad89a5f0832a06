import time
import types

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from cosign_gateway.api import realtime
from cosign_gateway.app import create_app
from cosign_gateway.errors import PAYLOAD_INVALID, SIGNATURE_INVALID, SUCCESS
from cosign_gateway.runtime.ledger import AuthorizationStatus
from cosign_gateway.security.tokens import DEV_SECRET, issue_socket_token, resolve_secret, verify_socket_token

from conftest import make_message, user_sign

MINER = 42


@pytest.fixture
def client(ctx):
    with TestClient(create_app(context=ctx)) as c:
        yield c


@pytest.fixture
def token(settings, user):
    conf = settings.socket
    return issue_socket_token(
        str(user.pubkey()), resolve_secret(conf.secret, False), issuer=conf.issuer, audience=conf.audience
    )["token"]


@pytest.fixture
def claim_message(ctx, authority, user, nft_mint):
    for epoch in (1, 2):
        ctx.ledger.seed_reward_epoch_sync(epoch, links=[(MINER, "pending", "pending")])
    payload = {
        "walletAddress": str(user.pubkey()),
        "solanaAssetId": str(nft_mint),
        "minerId": MINER,
        "rewardIds": [1, 2],
        "claimerType": "owner",
        "amountToClaim": 3.5,
    }
    return make_message(authority, payload)


def _url(token):
    return f"/ws/solana-sign?auth={token}"


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


def test_connection_without_token_is_refused(client):
    with pytest.raises(WebSocketDisconnect) as e:
        with client.websocket_connect("/ws/solana-sign"):
            pass
    assert e.value.code == 4001


def test_connection_with_forged_token_is_refused(client, user, settings):
    conf = settings.socket
    forged = issue_socket_token(str(user.pubkey()), b"another-secret", issuer=conf.issuer, audience=conf.audience)
    with pytest.raises(WebSocketDisconnect) as e:
        with client.websocket_connect(_url(forged["token"])):
            pass
    assert e.value.code == 4001


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def test_claim_then_sign_and_send(client, ctx, rpc, token, claim_message, user):
    with client.websocket_connect(_url(token)) as ws:
        ws.send_json({"event": "get-tx-to-claim", "data": {"signature": claim_message}})
        frame = ws.receive_json()
        assert frame["event"] == "get-tx-to-claim:response"
        data = frame["data"]
        assert data["error"] is False and data["code"] == SUCCESS
        assert data["serializedInitTx"] is None
        nonce = data["nonce"]

        signed = user_sign(data["serializedTx"], user)
        ws.send_json({"event": "sign-and-send", "data": {"nonce": nonce, "serializedTransaction": signed}})

        ack = ws.receive_json()
        assert ack["event"] == "sign-and-send:response" and ack["data"]["success"]
        request_id = ack["data"]["requestId"]
        assert ws.receive_json() == {
            "event": "sign-and-send:status",
            "data": {"requestId": request_id, "status": "pending"},
        }
        final = ws.receive_json()
        assert final["event"] == "sign-and-send:status"
        assert final["data"]["status"] == "confirmed"
        assert final["data"]["signature"] == str(rpc.sent[0].signatures[0])

    assert ctx.ledger.get_sync(nonce).status is AuthorizationStatus.AUTHORIZED


def test_claim_includes_init_tx_on_request(client, token, claim_message):
    with client.websocket_connect(_url(token)) as ws:
        ws.send_json({"event": "get-tx-to-claim", "data": {"signature": claim_message, "includeInitTx": True}})
        data = ws.receive_json()["data"]
        assert data["serializedInitTx"] is not None


def test_failed_broadcast_reports_failed_status(client, ctx, token, user, claim_message):
    with client.websocket_connect(_url(token)) as ws:
        ws.send_json({"event": "get-tx-to-claim", "data": {"signature": claim_message}})
        data = ws.receive_json()["data"]
        signed = user_sign(data["serializedTx"], user)
        ws.send_json({"event": "sign-and-send", "data": {"nonce": data["nonce"] + 1, "serializedTransaction": signed}})
        ws.receive_json()
        ws.receive_json()
        final = ws.receive_json()["data"]
        assert final["status"] == "failed" and final["code"] == "nonce-not-found"


def test_bad_requests_get_error_events(client, token):
    with client.websocket_connect(_url(token)) as ws:
        ws.send_json({"event": "get-tx-to-claim", "data": {"signature": "garbage"}})
        frame = ws.receive_json()
        assert frame["event"] == "get-tx-to-claim:error" and frame["data"]["code"] == SIGNATURE_INVALID

        ws.send_json({"event": "get-tx-to-claim", "data": {}})
        assert ws.receive_json()["event"] == "get-tx-to-claim:error"

        ws.send_json({"event": "sign-and-send", "data": {"serializedTransaction": "abc"}})
        frame = ws.receive_json()
        assert frame["event"] == "sign-and-send:error" and frame["data"]["code"] == PAYLOAD_INVALID

        ws.send_json({"event": "mint", "data": {}})
        assert ws.receive_json()["event"] == "error"

        ws.send_text("not json")
        assert ws.receive_json()["event"] == "error"


def test_expired_token_closes_socket(client, token, monkeypatch):
    later = time.time() + 7200
    monkeypatch.setattr(realtime, "time", types.SimpleNamespace(time=lambda: later))
    with client.websocket_connect(_url(token)) as ws:
        ws.send_json({"event": "get-tx-to-claim", "data": {"signature": "x"}})
        frame = ws.receive_json()
        assert frame["event"] == "get-tx-to-claim:error"
        assert frame["data"]["code"] == realtime.TOKEN_EXPIRED
        with pytest.raises(WebSocketDisconnect) as e:
            ws.receive_json()
        assert e.value.code == 4001


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


def test_token_roundtrip_and_rejections(user):
    secret = b"s" * 32
    wallet = str(user.pubkey())
    issued = issue_socket_token(wallet, secret, issuer="i", audience="a", ttl_sec=60)
    claims = verify_socket_token(issued["token"], secret, issuer="i", audience="a")
    assert claims["walletAddress"] == wallet and claims["exp"] == issued["expires"]

    assert verify_socket_token(issued["token"], b"t" * 32, issuer="i", audience="a") is None
    assert verify_socket_token(issued["token"], secret, issuer="i", audience="other") is None
    assert verify_socket_token(issued["token"], secret, issuer="other", audience="a") is None
    assert verify_socket_token("a.b", secret, issuer="i", audience="a") is None

    expired = issue_socket_token(wallet, secret, issuer="i", audience="a", ttl_sec=-10)
    assert verify_socket_token(expired["token"], secret, issuer="i", audience="a") is None

    h, p, s = issued["token"].split(".")
    assert verify_socket_token(f"{h}.{p}x.{s}", secret, issuer="i", audience="a") is None


def test_secret_resolution():
    assert resolve_secret(None, False) == DEV_SECRET.encode()
    assert resolve_secret("x" * 40, True) == b"x" * 40
    with pytest.raises(RuntimeError):
        resolve_secret("short", True)
    with pytest.raises(RuntimeError):
        resolve_secret(None, True)
