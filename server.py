"""
Multi-chain Transaction Explorer - HTTP backend
Explorer proxy, merged transfer history, live ingestion sessions and annotations
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Set

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_sock import Sock
from flasgger import Swagger

from annotations import AnnotationSubscriptionManager
from cache import create_cache
from chains import ChainEndpointRegistry
from config import config
from errors import (
    GENERIC_LOAD_ERROR,
    ConfigurationError,
    NetworkError,
    NotAuthenticatedError,
    PublishError,
    UpstreamError,
)
from explorer_api import NATIVE_TRANSFERS, TOKEN_TRANSFERS, EtherscanClient
from historical import HistoricalTransactionFetcher
from ingestion import LiveIngestionEngine
from local_store import LocalCache
from merger import filter_transactions, merge, paginate
from models import Transaction
from providers import BlockchainDataProvider, create_provider
from rate_limiting import EventRateLimiter, RateLimiter, create_rate_limit_middleware
from relay_pool import RelayPool
from uri import AddressType, kind_from_uri, parse_uri

# Configure logging
logging.basicConfig(level=getattr(logging, config.LOG_LEVEL), format=config.LOG_FORMAT)
logger = logging.getLogger(__name__)


# ==================== BACKGROUND EVENT LOOP ====================


class BackgroundLoop:
    """One asyncio loop on a daemon thread, shared by live sessions and annotations"""

    def __init__(self):
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def _ensure_started(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self.loop is None:
                self.loop = asyncio.new_event_loop()
                self.thread = threading.Thread(
                    target=self.loop.run_forever, name="explorer-loop", daemon=True
                )
                self.thread.start()
        return self.loop

    def submit(self, coro):
        """Schedule a coroutine and return its concurrent future"""
        return asyncio.run_coroutine_threadsafe(coro, self._ensure_started())

    def run(self, coro, timeout: Optional[float] = 60):
        """Run a coroutine on the loop and wait for its result"""
        return self.submit(coro).result(timeout)

    def stop(self) -> None:
        with self._lock:
            loop, thread = self.loop, self.thread
            self.loop = self.thread = None
        if loop is not None:
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout=5)


# ==================== APPLICATION ====================

app = Flask(__name__)
CORS(app, origins=config.CORS_ORIGINS)
sock = Sock(app)

swagger_config = {
    "headers": [],
    "specs": [
        {
            "endpoint": "apispec",
            "route": "/apispec.json",
            "rule_filter": lambda rule: True,
            "model_filter": lambda tag: True,
        }
    ],
    "static_url_path": "/flasgger_static",
    "swagger_ui": True,
    "specs_route": "/api/docs",
}

swagger_template = {
    "info": {
        "title": "Transaction Explorer API",
        "description": "Multi-chain token transfer history, live transfer feeds and on-chain annotations",
        "version": "1.0.0",
    },
    "basePath": "/",
    "schemes": ["https", "http"],
    "tags": [
        {"name": "Health", "description": "Health check endpoints"},
        {"name": "Explorer", "description": "Block explorer proxy"},
        {"name": "History", "description": "Merged transfer history"},
        {"name": "Live", "description": "Live ingestion sessions"},
        {"name": "Annotations", "description": "Notes attached to addresses and transactions"},
    ],
}

swagger = Swagger(app, config=swagger_config, template=swagger_template)

registry = ChainEndpointRegistry.from_file(config.CHAINS_FILE)
cache = create_cache()
local_cache = LocalCache(config.DB_PATH)
explorer_client = EtherscanClient(registry, cache=cache)
background = BackgroundLoop()
providers: Dict[str, BlockchainDataProvider] = {}
fetcher = HistoricalTransactionFetcher(
    registry,
    proxy_url="",
    client=explorer_client,
    provider_factory=lambda chain_config: get_provider(chain_config.slug),
)
annotations = AnnotationSubscriptionManager(RelayPool(), local_cache=local_cache)

if config.RATE_LIMIT_ENABLED:
    create_rate_limit_middleware(app, RateLimiter())

# Live sessions by id
live_sessions: Dict[str, LiveIngestionEngine] = {}
live_lock = threading.RLock()

# WebSocket connections for live transfer broadcasts
ws_clients: Set[Any] = set()
ws_lock = threading.RLock()

# Persists and broadcasts live transfers in arrival order
live_writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="live-writer")


def get_provider(chain: str) -> BlockchainDataProvider:
    chain_config = registry.get(chain)
    if chain_config.slug not in providers:
        providers[chain_config.slug] = create_provider(chain_config, cache=cache)
    return providers[chain_config.slug]


# ==================== ERROR HANDLING ====================


@app.errorhandler(ConfigurationError)
def handle_configuration_error(e):
    logger.error(f"Configuration error: {e}")
    return jsonify({"error": str(e)}), 500


@app.errorhandler(UpstreamError)
def handle_upstream_error(e):
    logger.error(f"Upstream error: {e.detail} payload={e.payload}")
    return jsonify({"error": e.public_message}), 502


@app.errorhandler(NetworkError)
def handle_network_error(e):
    logger.error(f"Network error: {e}")
    return jsonify({"error": str(e)}), 503


@app.errorhandler(PublishError)
def handle_publish_error(e):
    return jsonify({"error": str(e)}), 502


@app.errorhandler(NotAuthenticatedError)
def handle_not_authenticated(e):
    return jsonify({"error": str(e)}), 401


def _bad_request(message: str):
    return jsonify({"error": message}), 400


def _int_arg(name: str, default: Optional[int] = None) -> Optional[int]:
    value = request.args.get(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer") from None


# ==================== EXPLORER PROXY ====================


@app.route("/api/etherscan", methods=["GET"])
def etherscan_proxy():
    """
    Proxy the chain's block explorer token transfer API
    ---
    tags:
      - Explorer
    parameters:
      - name: chain
        in: query
        type: string
        required: true
        description: Chain slug (ethereum, gnosis, base, ...)
      - name: address
        in: query
        type: string
        description: Account address
      - name: contractaddress
        in: query
        type: string
        description: Token contract address
      - name: action
        in: query
        type: string
        default: tokentx
        description: tokentx or txlist
    responses:
      200:
        description: Explorer response payload (status "1")
      400:
        description: Missing chain
      500:
        description: API key not configured or explorer failure
    """
    chain = (request.args.get("chain") or "").lower()
    address = request.args.get("address")
    contractaddress = request.args.get("contractaddress")
    action = request.args.get("action", TOKEN_TRANSFERS)
    if not chain:
        return _bad_request("chain is required")
    if action not in (TOKEN_TRANSFERS, NATIVE_TRANSFERS):
        return _bad_request(f"Unsupported action: {action}")

    registry.get(chain)
    try:
        config.get_explorer_api_key(chain)
    except ConfigurationError as e:
        logger.error(str(e))
        return jsonify({"error": "API key not configured"}), 500

    try:
        data, cached = explorer_client.fetch_cached(chain, address, contractaddress, action=action)
    except UpstreamError as e:
        logger.error(f"Explorer proxy failed: {e.detail} payload={e.payload}")
        return jsonify({"error": GENERIC_LOAD_ERROR}), 500

    if cached:
        return jsonify({**data, "cached": True})
    return jsonify(data)


# ==================== HISTORY ====================


def _live_transactions(chain: str, address: str) -> List[Transaction]:
    address = address.lower()
    with live_lock:
        engines = list(live_sessions.values())
    live: List[Transaction] = []
    for engine in engines:
        if engine.chain == chain and (engine.account or "").lower() == address:
            live.extend(engine.snapshot())
    return live


def _track_visible(uris: List[str]) -> None:
    """Subscribe to notes for the entities on screen without waiting on relays"""
    def done(future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.warning(f"Annotation tracking failed: {future.exception()}")

    background.submit(annotations.track_uris(uris)).add_done_callback(done)


@app.route("/api/history/<chain>/<address>", methods=["GET"])
def get_history(chain, address):
    """
    Merged transfer history for an address
    ---
    tags:
      - History
    parameters:
      - name: chain
        in: path
        type: string
        required: true
      - name: address
        in: path
        type: string
        required: true
      - name: token
        in: query
        type: string
        description: Only transfers of this token contract
      - name: page
        in: query
        type: integer
        default: 1
      - name: per_page
        in: query
        type: integer
        default: 20
      - name: start
        in: query
        type: integer
        description: Earliest timestamp (unix seconds)
      - name: end
        in: query
        type: integer
        description: Latest timestamp (unix seconds)
      - name: include_native
        in: query
        type: boolean
        default: false
    responses:
      200:
        description: Paginated transfers, newest first
      400:
        description: Invalid parameters
      502:
        description: Explorer failure
    """
    chain_config = registry.get(chain)
    token = request.args.get("token")
    include_native = request.args.get("include_native", "false").lower() == "true"
    try:
        page = _int_arg("page", 1)
        per_page = min(_int_arg("per_page", 20), 100)
        start = _int_arg("start")
        end = _int_arg("end")
        historical = background.run(
            fetcher.fetch_all(chain_config.slug, account=address, token=token, include_native=include_native)
        )
        local_cache.bulk_upsert_transactions(historical, chain_config.slug)
        merged = merge(historical, _live_transactions(chain_config.slug, address))
        result = paginate(
            filter_transactions(merged, start, end, [token] if token else None), page, per_page
        )
    except ValueError as e:
        return _bad_request(str(e))

    result["items"] = [tx.to_dict() for tx in result["items"]]
    uris = [chain_config.address_uri(address)] + [
        chain_config.tx_uri(tx["txHash"]) for tx in result["items"]
    ]
    _track_visible(uris)

    return jsonify({"chain": chain_config.slug, "address": address, **result})


@app.route("/api/uri/parse", methods=["GET"])
def parse_uri_endpoint():
    """
    Decompose an annotation URI
    ---
    tags:
      - Annotations
    parameters:
      - name: uri
        in: query
        type: string
        required: true
    responses:
      200:
        description: URI parts
      400:
        description: Malformed URI or unknown namespace
    """
    uri = request.args.get("uri", "")
    try:
        parts = parse_uri(uri)
    except ValueError as e:
        return _bad_request(str(e))

    return jsonify({
        "namespace": parts.namespace.value,
        "chainId": parts.chain_id,
        "type": parts.address_type.value,
        "address": parts.address,
        "txId": parts.tx_id,
        "value": parts.value,
        "kind": kind_from_uri(uri.lower()),
        "isTransaction": parts.address_type is AddressType.TX,
    })


# ==================== LIVE SESSIONS ====================


def _broadcast_live(session_id: str, engine: LiveIngestionEngine):
    """Listener that persists and broadcasts each live transfer on the writer thread"""

    def publish(tx: Transaction) -> None:
        local_cache.bulk_upsert_transactions([tx], engine.chain)
        broadcast_update("live_transaction", {
            "session": session_id,
            "chain": engine.chain,
            "transaction": tx.to_dict(),
        })

    def done(future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Live transaction publish failed for {session_id}: {future.exception()}")

    def on_transaction(tx: Transaction):
        # SQLite writes and socket sends stay off the event loop
        future = live_writer.submit(publish, tx)
        future.add_done_callback(done)
        return future

    return on_transaction


def _on_session_done(session_id: str):
    def done(future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error(f"Live session {session_id} ended: {error}")
            broadcast_update("live_stopped", {"session": session_id, "error": str(error)})

    return done


def _get_session(session_id: str) -> Optional[LiveIngestionEngine]:
    with live_lock:
        return live_sessions.get(session_id)


@app.route("/api/live", methods=["POST"])
def start_live_session():
    """
    Start a live ingestion session
    ---
    tags:
      - Live
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            chain:
              type: string
            account:
              type: string
            token:
              type: string
            start_block:
              type: integer
            max_per_minute:
              type: integer
            prefer_streaming:
              type: boolean
    responses:
      201:
        description: Session started
      400:
        description: Invalid parameters
    """
    body = request.get_json(silent=True) or {}
    chain = body.get("chain")
    if not chain:
        return _bad_request("chain is required")

    provider = get_provider(chain)
    try:
        limiter = EventRateLimiter(body.get("max_per_minute"))
        engine = LiveIngestionEngine(
            provider,
            account=body.get("account"),
            token=body.get("token"),
            start_block=body.get("start_block"),
            prefer_streaming=body.get("prefer_streaming"),
            limiter=limiter,
        )
    except ValueError as e:
        return _bad_request(str(e))

    session_id = uuid.uuid4().hex
    engine.add_listener(_broadcast_live(session_id, engine))
    with live_lock:
        live_sessions[session_id] = engine
    background.submit(engine.run()).add_done_callback(_on_session_done(session_id))
    logger.info(f"Started live session {session_id} on {engine.chain}")

    return jsonify({"session_id": session_id, "status": engine.status()}), 201


@app.route("/api/live/<session_id>", methods=["GET"])
def get_live_session(session_id):
    """
    Live buffer and status of a session
    ---
    tags:
      - Live
    parameters:
      - name: session_id
        in: path
        type: string
        required: true
    responses:
      200:
        description: Newest-first live transfers, skipped summary and connection state
      404:
        description: Unknown session
    """
    engine = _get_session(session_id)
    if engine is None:
        return jsonify({"error": "Session not found"}), 404
    return jsonify({
        "session_id": session_id,
        "status": engine.status(),
        "skipped": engine.skipped_summary(),
        "transactions": [tx.to_dict() for tx in engine.snapshot()],
    })


@app.route("/api/live/<session_id>/ack", methods=["POST"])
def acknowledge_live_session(session_id):
    """
    Acknowledge skipped transfers and resume admitting new ones
    ---
    tags:
      - Live
    parameters:
      - name: session_id
        in: path
        type: string
        required: true
    responses:
      200:
        description: Number of skipped transfers acknowledged
      404:
        description: Unknown session
    """
    engine = _get_session(session_id)
    if engine is None:
        return jsonify({"error": "Session not found"}), 404
    return jsonify({"session_id": session_id, "acknowledged": engine.acknowledge_skipped()})


@app.route("/api/live/<session_id>", methods=["DELETE"])
def stop_live_session(session_id):
    """
    Stop a live session
    ---
    tags:
      - Live
    parameters:
      - name: session_id
        in: path
        type: string
        required: true
    responses:
      200:
        description: Session stopped
      404:
        description: Unknown session
    """
    with live_lock:
        engine = live_sessions.pop(session_id, None)
    if engine is None:
        return jsonify({"error": "Session not found"}), 404
    background.run(engine.stop(), timeout=config.WS_CONNECT_TIMEOUT + 5)
    return jsonify({"session_id": session_id, "status": engine.status()})


# ==================== ANNOTATIONS ====================


@app.route("/api/notes", methods=["GET"])
def get_notes():
    """
    Notes for one or more URIs, newest first
    ---
    tags:
      - Annotations
    parameters:
      - name: uri
        in: query
        type: string
        required: true
        description: Repeat for several URIs
    responses:
      200:
        description: Notes keyed by URI
      400:
        description: Missing uri
    """
    uris = [uri.lower() for uri in request.args.getlist("uri") if uri]
    if not uris:
        return _bad_request("uri is required")

    background.run(annotations.track_uris(uris), timeout=config.RELAY_CONNECT_TIMEOUT + 5)
    return jsonify({
        "notes": {uri: [note.to_event() for note in annotations.get_notes(uri)] for uri in uris}
    })


@app.route("/api/notes", methods=["POST"])
def publish_note():
    """
    Publish a note about a URI
    ---
    tags:
      - Annotations
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            uri:
              type: string
            content:
              type: string
            text:
              type: string
              description: Free text; hashtags become tags merged over the latest note
            tags:
              type: array
              items:
                type: array
                items:
                  type: string
    responses:
      201:
        description: Signed note
      400:
        description: Invalid parameters
      401:
        description: No signing key
      502:
        description: Every relay rejected the note
    """
    body = request.get_json(silent=True) or {}
    uri = body.get("uri")
    if not uri:
        return _bad_request("uri is required")
    try:
        parse_uri(uri)
    except ValueError as e:
        return _bad_request(str(e))

    if body.get("text") is not None:
        note = background.run(annotations.publish_note_from_text(uri, body["text"]))
    else:
        note = background.run(annotations.publish(uri, body.get("content", ""), body.get("tags") or []))
    return jsonify(note.to_event()), 201


# ==================== WEBSOCKET REAL-TIME UPDATES ====================


@sock.route("/api/ws/live")
def websocket_live(ws):
    """WebSocket endpoint for live transfer broadcasts"""
    with ws_lock:
        if len(ws_clients) >= config.WS_MAX_CONNECTIONS:
            ws.close()
            return
        ws_clients.add(ws)

    logger.info(f"WebSocket client connected. Total: {len(ws_clients)}")

    try:
        while True:
            # Receive heartbeat
            data = ws.receive()
            if data == "ping":
                ws.send("pong")
    except Exception as e:
        logger.info(f"WebSocket closed: {e}")
    finally:
        with ws_lock:
            ws_clients.discard(ws)
        logger.info(f"WebSocket client disconnected. Total: {len(ws_clients)}")


def broadcast_update(update_type: str, data: Dict[str, Any]) -> None:
    """Broadcast update to all WebSocket clients"""
    message = json.dumps({
        "type": update_type,
        "data": data,
        "timestamp": time.time(),
    })

    with ws_lock:
        for client in list(ws_clients):
            try:
                client.send(message)
            except Exception as e:
                logger.error(f"Broadcast error: {e}")
                ws_clients.discard(client)


# ==================== HEALTH CHECK ====================


@app.route("/health", methods=["GET"])
def health_check():
    """
    Health check
    ---
    tags:
      - Health
    responses:
      200:
        description: Health status
    """
    with live_lock:
        sessions = len(live_sessions)
    return jsonify({
        "status": "healthy",
        "explorer": "running",
        "chains": registry.slugs(),
        "live_sessions": sessions,
        "cache": cache.get_stats(),
        "timestamp": time.time(),
    }), 200


@app.route("/", methods=["GET"])
def explorer_info():
    """
    Explorer information
    ---
    tags:
      - Health
    responses:
      200:
        description: Explorer service information
    """
    return jsonify({
        "name": "Transaction Explorer",
        "version": "1.0.0",
        "chains": registry.slugs(),
        "endpoints": {
            "explorer_proxy": "/api/etherscan",
            "history": "/api/history/<chain>/<address>",
            "uri": "/api/uri/parse",
            "live": "/api/live",
            "notes": "/api/notes",
            "websocket": "/api/ws/live",
            "health": "/health",
            "swagger_docs": "/api/docs",
            "openapi_spec": "/apispec.json",
        },
        "timestamp": time.time(),
    })


# ==================== SHUTDOWN ====================


def shutdown() -> None:
    """Stop live sessions, then release relays, the writer thread and storage"""
    logger.info("Shutting down Transaction Explorer")
    with live_lock:
        engines = list(live_sessions.values())
        live_sessions.clear()

    for engine in engines:
        try:
            background.run(engine.stop(), timeout=config.WS_CONNECT_TIMEOUT + 5)
        except Exception as e:
            logger.error(f"Error stopping live session on {engine.chain}: {e}")

    try:
        background.run(annotations.close(), timeout=10)
        background.run(annotations.pool.close(), timeout=10)
    except Exception as e:
        logger.error(f"Error closing relay connections: {e}")

    background.stop()
    live_writer.shutdown(wait=True)
    cache.close()
    local_cache.close()


if __name__ == "__main__":
    logger.info("Starting Transaction Explorer")
    logger.info(f"Chains: {', '.join(registry.slugs())}")
    logger.info(f"Database: {config.DB_PATH}")
    logger.info(f"Relays: {', '.join(config.NOSTR_RELAYS)}")
    logger.info(f"Port: {config.EXPLORER_PORT}")

    try:
        app.run(
            host=config.EXPLORER_HOST,
            port=config.EXPLORER_PORT,
            debug=config.DEBUG,
            threaded=True,
        )
    finally:
        shutdown()
