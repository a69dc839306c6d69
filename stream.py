"""
Push-based log stream
eth_subscribe("logs") over WebSocket with an explicit connection state machine and endpoint failover
"""

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import websockets

from config import config
from endpoint_rotation import EndpointRotation
from errors import NetworkError
from models import LogEvent, LogFilter

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ERRORED = "errored"
    RECONNECTING = "reconnecting"


class LogStream:
    """
    Subscribe to matching logs on the first reachable WebSocket endpoint

    Each connect attempt is bounded by connect_timeout. A failed or dropped
    connection moves to the next endpoint (round-robin by failure count);
    once every endpoint has failed in a row, run() raises NetworkError.
    stop() is the cancellation token.
    """

    def __init__(
        self,
        endpoints: List[str],
        filters: List[LogFilter],
        on_log: Callable[[LogEvent], Any],
        connect_timeout: Optional[float] = None,
        reconnect_delay: float = 1.0,
        connect: Callable = websockets.connect,
        name: str = "ws",
    ):
        self.rotation = EndpointRotation(endpoints, name=name)
        self.filters = filters
        self.on_log = on_log
        self.connect_timeout = connect_timeout or config.WS_CONNECT_TIMEOUT
        self.reconnect_delay = reconnect_delay
        self.connect = connect
        self.state = ConnectionState.CLOSED
        self.subscriptions: Dict[str, LogFilter] = {}
        self._listeners: List[Callable[[ConnectionState], None]] = []
        self._stop = asyncio.Event()
        self._ws = None

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.OPEN

    def add_state_listener(self, listener: Callable[[ConnectionState], None]) -> None:
        self._listeners.append(listener)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        logger.info(f"{self.rotation.name} stream {state.value} ({self.rotation.current})")
        for listener in self._listeners:
            try:
                listener(state)
            except Exception as e:
                logger.error(f"State listener failed: {e}")

    async def _open(self, endpoint: str):
        return await self.connect(endpoint)

    async def _subscribe(self, ws) -> None:
        """
        Send one eth_subscribe per filter and map subscription ids to filters

        Replies are matched by request id. Logs of an already confirmed
        subscription can arrive before the remaining replies; they are
        dispatched, not dropped.
        """
        self.subscriptions = {}
        pending: Dict[int, LogFilter] = {}
        for request_id, log_filter in enumerate(self.filters, start=1):
            pending[request_id] = log_filter
            await ws.send(
                json.dumps(
                    {
                        "jsonrpc": "2.0",
                        "id": request_id,
                        "method": "eth_subscribe",
                        "params": ["logs", log_filter.to_rpc()],
                    }
                )
            )

        while pending:
            reply = json.loads(
                await asyncio.wait_for(ws.recv(), timeout=self.connect_timeout)
            )
            if reply.get("method") == "eth_subscription":
                await self.handle_message(reply)
                continue
            log_filter = pending.pop(reply.get("id"), None)
            if log_filter is None:
                logger.debug(f"Ignoring unexpected reply during subscribe: {reply}")
                continue
            if reply.get("error"):
                raise ConnectionError(f"eth_subscribe rejected: {reply['error']}")
            self.subscriptions[reply.get("result")] = log_filter

    async def _listen(self, ws) -> None:
        async for message in ws:
            try:
                data = json.loads(message)
            except json.JSONDecodeError as e:
                logger.error(f"Failed to parse stream message: {e}")
                continue
            await self.handle_message(data)

    async def handle_message(self, data: Dict[str, Any]) -> None:
        if data.get("method") != "eth_subscription":
            return
        result = (data.get("params") or {}).get("result")
        if not isinstance(result, dict) or result.get("removed"):
            return
        try:
            outcome = self.on_log(LogEvent.from_rpc(result))
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Dropping streamed log {result.get('transactionHash')}: {e}")

    async def _fail(self, error: BaseException) -> None:
        self._set_state(ConnectionState.ERRORED)
        self.rotation.record_failure(error)
        if self.rotation.exhausted:
            self._set_state(ConnectionState.CLOSED)
            raise NetworkError(
                f"All {len(self.rotation.endpoints)} {self.rotation.name} endpoints failed: {error}"
            ) from error
        self._set_state(ConnectionState.RECONNECTING)
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self.reconnect_delay)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """Connect, subscribe and dispatch until stopped or all endpoints fail"""
        self.rotation.reset()
        while not self._stop.is_set():
            endpoint = self.rotation.current
            self._set_state(ConnectionState.CONNECTING)
            try:
                self._ws = await asyncio.wait_for(self._open(endpoint), timeout=self.connect_timeout)
                await self._subscribe(self._ws)
            except (asyncio.TimeoutError, OSError, ConnectionError, ValueError,
                    websockets.exceptions.WebSocketException) as e:
                await self._close_socket()
                await self._fail(e)
                continue

            self._set_state(ConnectionState.OPEN)
            self.rotation.record_success()
            try:
                await self._listen(self._ws)
                error: BaseException = ConnectionError(f"{endpoint} closed the stream")
            except websockets.exceptions.ConnectionClosed as e:
                error = e
            finally:
                await self._close_socket()

            if self._stop.is_set():
                break
            await self._fail(error)

        self._set_state(ConnectionState.CLOSED)

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except websockets.exceptions.WebSocketException as e:
                logger.debug(f"Error closing stream socket: {e}")

    async def stop(self) -> None:
        self._stop.set()
        await self._close_socket()
