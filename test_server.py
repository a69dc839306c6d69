"""
Tests for the HTTP backend (server.py)
Explorer proxy, history, live sessions, URIs and annotations through the Flask test client
"""

import json
import os
import threading
import time
from unittest.mock import AsyncMock, Mock, patch

import pytest

import server
from cache import create_cache
from errors import GENERIC_LOAD_ERROR, NotAuthenticatedError, PublishError, UpstreamError
from models import Note, Token, Transaction

ACCOUNT = "0x1111111111111111111111111111111111111111"
URI = f"eip155:1:address:{ACCOUNT}"


def make_tx(tx_hash, block, log_index=0, timestamp=1700000000):
    return Transaction(
        tx_hash=tx_hash,
        block_number=block,
        log_index=log_index,
        timestamp=timestamp,
        from_address=ACCOUNT,
        to_address="0x2222222222222222222222222222222222222222",
        value="1000000",
        token=Token(address="0xa0b8", name="USD Coin", symbol="USDC", decimals=6),
    )


def make_note(content="hello"):
    return Note(id="ab" * 32, pubkey="cd" * 32, created_at=1700000000, kind=1111,
                content=content, tags=[["I", URI], ["k", "ethereum:address"]])


@pytest.fixture
def client(monkeypatch):
    server.app.config["TESTING"] = True
    monkeypatch.setattr(server.explorer_client, "cache", create_cache())
    with server.app.test_client() as c:
        yield c
    with server.live_lock:
        server.live_sessions.clear()


@pytest.fixture
def api_key():
    with patch.dict(os.environ, {"ETHEREUM_ETHERSCAN_API_KEY": "key"}):
        yield


class TestInfo:
    def test_explorer_info(self, client):
        response = client.get("/")
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["name"] == "Transaction Explorer"
        assert data["endpoints"]["swagger_docs"] == "/api/docs"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["status"] == "healthy"
        assert "ethereum" in data["chains"]
        assert data["live_sessions"] == 0

    def test_api_docs(self, client):
        response = client.get("/apispec.json")
        assert response.status_code == 200
        assert "/api/history/{chain}/{address}" in json.loads(response.data)["paths"]


class TestExplorerProxy:
    def test_requires_chain(self, client):
        assert client.get("/api/etherscan?address=0x1").status_code == 400

    def test_unsupported_action(self, client, api_key):
        assert client.get("/api/etherscan?chain=ethereum&action=balance").status_code == 400

    def test_missing_api_key(self, client):
        with patch.dict(os.environ, {"ETHEREUM_ETHERSCAN_API_KEY": ""}):
            response = client.get(f"/api/etherscan?chain=ethereum&address={ACCOUNT}")
        assert response.status_code == 500
        assert json.loads(response.data) == {"error": "API key not configured"}

    def test_unknown_chain(self, client):
        response = client.get("/api/etherscan?chain=nowhere")
        assert response.status_code == 500
        assert "Unknown chain" in json.loads(response.data)["error"]

    def test_success_is_cached(self, client, api_key):
        payload = {"status": "1", "message": "OK", "result": []}
        with patch.object(server.explorer_client, "fetch_raw", return_value=payload) as fetch_raw:
            first = client.get(f"/api/etherscan?chain=ethereum&address={ACCOUNT}")
            second = client.get(f"/api/etherscan?chain=ethereum&address={ACCOUNT}")

        assert first.status_code == 200
        assert json.loads(first.data) == payload
        assert json.loads(second.data)["cached"] is True
        fetch_raw.assert_called_once_with("ethereum", ACCOUNT, None, action="tokentx")

    def test_upstream_failure(self, client, api_key):
        error = UpstreamError("status 0", payload={"status": "0", "result": "Max rate limit reached"})
        with patch.object(server.explorer_client, "fetch_raw", side_effect=error):
            response = client.get(f"/api/etherscan?chain=ethereum&address={ACCOUNT}")

        assert response.status_code == 500
        assert json.loads(response.data) == {"error": GENERIC_LOAD_ERROR}


class TestHistory:
    def test_merged_with_live_buffer(self, client):
        historical = [make_tx("0xa", 100), make_tx("0xb", 90)]
        live_engine = Mock(chain="ethereum", account=ACCOUNT.upper().replace("0X", "0x"))
        live_engine.snapshot.return_value = [make_tx("0xc", 110), make_tx("0xA", 100)]
        server.live_sessions["live"] = live_engine

        with patch.object(server.fetcher, "fetch_all", AsyncMock(return_value=historical)), \
                patch.object(server, "_track_visible") as track:
            response = client.get(f"/api/history/ethereum/{ACCOUNT}?per_page=2")

        assert response.status_code == 200
        data = json.loads(response.data)
        assert [item["txHash"] for item in data["items"]] == ["0xc", "0xA"]
        assert data["total"] == 3
        assert data["pages"] == 2
        uris = track.call_args[0][0]
        assert uris[0] == URI
        assert "eip155:1:tx:0xc" in uris

    def test_persists_historical(self, client):
        with patch.object(server.fetcher, "fetch_all", AsyncMock(return_value=[make_tx("0xfeed", 123)])), \
                patch.object(server, "_track_visible"):
            client.get(f"/api/history/ethereum/{ACCOUNT}")

        stored = server.local_cache.get_transactions_by_address("ethereum", ACCOUNT)
        assert "0xfeed" in [tx.tx_hash for tx in stored]

    def test_pages_share_one_explorer_request(self, client, api_key):
        payload = {"status": "1", "message": "OK", "result": [
            {"hash": "0xa", "blockNumber": "100", "logIndex": "0", "timeStamp": "1700000000",
             "from": ACCOUNT, "to": "0x2", "value": "1", "contractAddress": "0xtoken"},
            {"hash": "0xb", "blockNumber": "90", "logIndex": "0", "timeStamp": "1700000000",
             "from": ACCOUNT, "to": "0x2", "value": "1", "contractAddress": "0xtoken"},
        ]}
        with patch.object(server.explorer_client, "fetch_raw", return_value=payload) as fetch_raw, \
                patch.object(server.fetcher, "_query_params", AsyncMock(return_value=(ACCOUNT, None))), \
                patch.object(server, "_track_visible"):
            first = client.get(f"/api/history/ethereum/{ACCOUNT}?per_page=1&page=1")
            second = client.get(f"/api/history/ethereum/{ACCOUNT}?per_page=1&page=2")

        assert [item["txHash"] for item in json.loads(first.data)["items"]] == ["0xa"]
        assert [item["txHash"] for item in json.loads(second.data)["items"]] == ["0xb"]
        fetch_raw.assert_called_once()

    def test_time_filter(self, client):
        historical = [make_tx("0xa", 100, timestamp=2000), make_tx("0xb", 90, timestamp=1000)]
        with patch.object(server.fetcher, "fetch_all", AsyncMock(return_value=historical)), \
                patch.object(server, "_track_visible"):
            response = client.get(f"/api/history/ethereum/{ACCOUNT}?start=1500")

        assert [item["txHash"] for item in json.loads(response.data)["items"]] == ["0xa"]

    def test_invalid_page(self, client):
        with patch.object(server.fetcher, "fetch_all", AsyncMock(return_value=[])):
            assert client.get(f"/api/history/ethereum/{ACCOUNT}?page=abc").status_code == 400
            assert client.get(f"/api/history/ethereum/{ACCOUNT}?page=0").status_code == 400

    def test_upstream_failure(self, client):
        with patch.object(server.fetcher, "fetch_all", AsyncMock(side_effect=UpstreamError("status 0"))):
            response = client.get(f"/api/history/ethereum/{ACCOUNT}")

        assert response.status_code == 502
        assert json.loads(response.data) == {"error": GENERIC_LOAD_ERROR}


class TestURIParse:
    def test_parse(self, client):
        response = client.get(f"/api/uri/parse?uri={URI}")
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data["namespace"] == "eip155"
        assert data["chainId"] == 1
        assert data["address"] == ACCOUNT
        assert data["kind"] == "ethereum:address"
        assert data["isTransaction"] is False

    def test_unknown_namespace(self, client):
        response = client.get("/api/uri/parse?uri=solana:1:address:abc")
        assert response.status_code == 400
        assert "blockchain name space unknown" in json.loads(response.data)["error"]


def fake_engine():
    engine = Mock(chain="ethereum", account=ACCOUNT)
    engine.run = AsyncMock()
    engine.stop = AsyncMock()
    engine.status.return_value = {"chain": "ethereum", "state": "polling", "connected": True}
    engine.skipped_summary.return_value = {"count": 2, "since": 1700000000000}
    engine.snapshot.return_value = [make_tx("0xc", 110)]
    engine.acknowledge_skipped.return_value = 2
    return engine


class TestLiveSessions:
    def test_requires_chain(self, client):
        assert client.post("/api/live", json={}).status_code == 400

    def test_requires_account_or_token(self, client):
        response = client.post("/api/live", json={"chain": "ethereum"})
        assert response.status_code == 400

    def test_session_lifecycle(self, client):
        engine = fake_engine()
        with patch.object(server, "LiveIngestionEngine", return_value=engine) as engine_class:
            response = client.post("/api/live", json={"chain": "ethereum", "account": ACCOUNT, "max_per_minute": 10})

        assert response.status_code == 201
        session_id = json.loads(response.data)["session_id"]
        assert engine_class.call_args[1]["account"] == ACCOUNT
        assert engine_class.call_args[1]["limiter"].max_per_minute == 10
        assert engine.add_listener.called

        data = json.loads(client.get(f"/api/live/{session_id}").data)
        assert data["skipped"] == {"count": 2, "since": 1700000000000}
        assert data["transactions"][0]["txHash"] == "0xc"

        ack = json.loads(client.post(f"/api/live/{session_id}/ack").data)
        assert ack["acknowledged"] == 2

        assert client.delete(f"/api/live/{session_id}").status_code == 200
        engine.stop.assert_awaited_once()
        assert client.get(f"/api/live/{session_id}").status_code == 404

    def test_unknown_session(self, client):
        assert client.post("/api/live/missing/ack").status_code == 404
        assert client.delete("/api/live/missing").status_code == 404

    def test_listener_broadcasts_and_persists(self, client):
        engine = fake_engine()
        ws = Mock()
        server.ws_clients.add(ws)
        try:
            listener = server._broadcast_live("abc", engine)
            listener(make_tx("0xlive", 200)).result(timeout=5)
        finally:
            server.ws_clients.discard(ws)

        message = json.loads(ws.send.call_args[0][0])
        assert message["type"] == "live_transaction"
        assert message["data"]["transaction"]["txHash"] == "0xlive"
        stored = server.local_cache.get_transactions_by_block_range("ethereum", 200, 200)
        assert [tx.tx_hash for tx in stored] == ["0xlive"]

    def test_listener_does_not_block_on_slow_clients(self, client):
        engine = fake_engine()
        release = threading.Event()
        slow = Mock()
        slow.send.side_effect = lambda message: release.wait(5)
        server.ws_clients.add(slow)
        try:
            listener = server._broadcast_live("abc", engine)
            started = time.monotonic()
            future = listener(make_tx("0xslow", 201))
            assert time.monotonic() - started < 1
            assert not future.done()
            release.set()
            future.result(timeout=5)
        finally:
            release.set()
            server.ws_clients.discard(slow)

        slow.send.assert_called_once()


class TestNotes:
    def test_requires_uri(self, client):
        assert client.get("/api/notes").status_code == 400

    def test_get_notes(self, client):
        annotations = Mock()
        annotations.track_uris = AsyncMock(return_value=True)
        annotations.get_notes.return_value = [make_note()]
        with patch.object(server, "annotations", annotations):
            response = client.get(f"/api/notes?uri={URI.upper()}&uri=eip155:1:tx:0xabc")

        data = json.loads(response.data)
        assert data["notes"][URI][0]["content"] == "hello"
        annotations.track_uris.assert_awaited_once_with([URI, "eip155:1:tx:0xabc"])

    def test_publish(self, client):
        annotations = Mock()
        annotations.publish = AsyncMock(return_value=make_note("paid"))
        with patch.object(server, "annotations", annotations):
            response = client.post("/api/notes", json={"uri": URI, "content": "paid", "tags": [["t", "rent"]]})

        assert response.status_code == 201
        assert json.loads(response.data)["content"] == "paid"
        annotations.publish.assert_awaited_once_with(URI, "paid", [["t", "rent"]])

    def test_publish_from_text(self, client):
        annotations = Mock()
        annotations.publish_note_from_text = AsyncMock(return_value=make_note())
        with patch.object(server, "annotations", annotations):
            response = client.post("/api/notes", json={"uri": URI, "text": "Rent #rent"})

        assert response.status_code == 201
        annotations.publish_note_from_text.assert_awaited_once_with(URI, "Rent #rent")

    def test_invalid_uri(self, client):
        assert client.post("/api/notes", json={"uri": "nope"}).status_code == 400

    def test_not_authenticated(self, client):
        annotations = Mock()
        annotations.publish = AsyncMock(side_effect=NotAuthenticatedError("no key"))
        with patch.object(server, "annotations", annotations):
            response = client.post("/api/notes", json={"uri": URI, "content": "x"})
        assert response.status_code == 401

    def test_rejected_by_relays(self, client):
        annotations = Mock()
        annotations.publish = AsyncMock(side_effect=PublishError("rejected"))
        with patch.object(server, "annotations", annotations):
            response = client.post("/api/notes", json={"uri": URI, "content": "x"})
        assert response.status_code == 502


class TestBroadcast:
    def test_failed_clients_are_dropped(self):
        good, bad = Mock(), Mock()
        bad.send.side_effect = ConnectionError("gone")
        server.ws_clients.update({good, bad})
        try:
            server.broadcast_update("live_stopped", {"session": "abc"})
            assert good in server.ws_clients
            assert bad not in server.ws_clients
        finally:
            server.ws_clients.clear()

        assert json.loads(good.send.call_args[0][0])["type"] == "live_stopped"


class TestShutdown:
    def test_releases_sessions_and_storage(self):
        engine = Mock(chain="ethereum")
        server.live_sessions["s1"] = engine
        with patch.object(server, "background") as background, \
                patch.object(server, "annotations") as annotations, \
                patch.object(server, "live_writer") as live_writer, \
                patch.object(server, "cache") as cache, \
                patch.object(server, "local_cache") as local_cache:
            server.shutdown()

        assert server.live_sessions == {}
        engine.stop.assert_called_once()
        annotations.close.assert_called_once()
        annotations.pool.close.assert_called_once()
        assert background.run.call_count == 3
        background.stop.assert_called_once()
        live_writer.shutdown.assert_called_once_with(wait=True)
        cache.close.assert_called_once()
        local_cache.close.assert_called_once()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
