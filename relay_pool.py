"""
Nostr relay pool
NIP-01 REQ/CLOSE/EVENT messaging over WebSockets to a set of relays
"""

import asyncio
import inspect
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Set

import websockets

from config import config
from errors import PublishError

logger = logging.getLogger(__name__)


EventHandler = Callable[[Dict[str, Any]], Any]


class Subscription:
    """Handle for one REQ spread across every connected relay"""

    def __init__(self, pool: "RelayPool", sub_id: str, filters: List[Dict[str, Any]], on_event: EventHandler):
        self.pool = pool
        self.id = sub_id
        self.filters = filters
        self.on_event = on_event
        self.seen: Set[str] = set()
        self.eose_relays: Set[str] = set()
        self.eose = asyncio.Event()
        self.closed = False

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self.pool.close_subscription(self.id)


class RelayPool:
    """
    Connections to the configured relays, shared by subscriptions and publishes

    A relay that drops is reconnected in the background with exponential
    backoff; every open subscription is re-sent to it once it is back.
    """

    def __init__(
        self,
        relays: Optional[List[str]] = None,
        connect_timeout: Optional[float] = None,
        publish_timeout: float = 10.0,
        reconnect_delay: Optional[float] = None,
        max_reconnect_delay: Optional[float] = None,
        connect: Callable = websockets.connect,
    ):
        self.relays = list(relays or config.NOSTR_RELAYS)
        self.connect_timeout = connect_timeout or config.RELAY_CONNECT_TIMEOUT
        self.publish_timeout = publish_timeout
        self.reconnect_delay = config.RELAY_RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay or config.RELAY_MAX_RECONNECT_DELAY
        self._connect = connect
        self.connections: Dict[str, Any] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self._pending_ok: Dict[str, Dict[str, asyncio.Future]] = {}
        self._readers: Dict[str, asyncio.Task] = {}
        self._reconnects: Dict[str, asyncio.Task] = {}
        self._closing = False

    # ==================== CONNECTIONS ====================

    async def _connect_relay(self, url: str) -> bool:
        try:
            ws = await asyncio.wait_for(self._open(url), timeout=self.connect_timeout)
        except (asyncio.TimeoutError, OSError, websockets.exceptions.WebSocketException) as e:
            logger.warning(f"Relay {url} unreachable: {e}")
            return False

        self.connections[url] = ws
        self._readers[url] = asyncio.create_task(self._reader(url, ws))
        logger.info(f"Connected to relay {url}")
        await self._resubscribe(url)
        return True

    async def _open(self, url: str):
        return await self._connect(url)

    async def _resubscribe(self, url: str) -> None:
        """Send every open REQ to a (re)connected relay"""
        for subscription in list(self.subscriptions.values()):
            if not subscription.closed:
                await self._send(url, ["REQ", subscription.id, *subscription.filters])

    async def connect(self) -> int:
        """Connect to every relay not yet connected; returns how many are live"""
        self._closing = False
        pending = [url for url in self.relays if url not in self.connections]
        if pending:
            await asyncio.gather(*(self._connect_relay(url) for url in pending))
        return len(self.connections)

    async def _ensure_connected(self) -> None:
        if not self.connections:
            await self.connect()

    def _schedule_reconnect(self, url: str) -> None:
        if self._closing or url in self._reconnects:
            return
        self._reconnects[url] = asyncio.create_task(self._reconnect(url))

    async def _reconnect(self, url: str) -> None:
        delay = self.reconnect_delay
        try:
            while not self._closing and url not in self.connections:
                await asyncio.sleep(delay)
                logger.info(f"Reconnecting to relay {url}")
                if not await self._connect_relay(url):
                    delay = min(delay * 2, self.max_reconnect_delay) if delay else 1.0
        finally:
            self._reconnects.pop(url, None)

    async def _send(self, url: str, message: List[Any]) -> bool:
        ws = self.connections.get(url)
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(message))
            return True
        except websockets.exceptions.WebSocketException as e:
            logger.warning(f"Send to relay {url} failed: {e}")
            self._drop(url, ws)
            self._schedule_reconnect(url)
            return False

    async def _broadcast(self, message: List[Any]) -> List[str]:
        urls = list(self.connections)
        results = await asyncio.gather(*(self._send(url, message) for url in urls))
        return [url for url, ok in zip(urls, results) if ok]

    def _drop(self, url: str, ws=None) -> None:
        """Forget a relay connection; ws guards against dropping a newer socket"""
        if ws is not None and self.connections.get(url) is not ws:
            return
        self.connections.pop(url, None)
        for futures in self._pending_ok.values():
            future = futures.get(url)
            if future is not None and not future.done():
                future.set_result((False, "connection closed"))

    # ==================== INCOMING ====================

    async def _reader(self, url: str, ws) -> None:
        try:
            async for message in ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError as e:
                    logger.error(f"Failed to parse relay message from {url}: {e}")
                    continue
                await self.handle_message(url, data)
        except websockets.exceptions.ConnectionClosed:
            logger.warning(f"Relay {url} closed the connection")
        finally:
            if self.connections.get(url) is ws:
                self._drop(url, ws)
                self._schedule_reconnect(url)

    async def handle_message(self, url: str, data: List[Any]) -> None:
        if not isinstance(data, list) or not data:
            return
        message_type = data[0]

        if message_type == "EVENT" and len(data) >= 3:
            subscription = self.subscriptions.get(data[1])
            event = data[2]
            if subscription is None or event.get("id") in subscription.seen:
                return
            subscription.seen.add(event.get("id"))
            try:
                outcome = subscription.on_event(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(f"Dropping relay event {event.get('id')}: {e}")

        elif message_type == "EOSE" and len(data) >= 2:
            subscription = self.subscriptions.get(data[1])
            if subscription is not None:
                subscription.eose_relays.add(url)
                if subscription.eose_relays >= set(self.connections):
                    subscription.eose.set()

        elif message_type == "OK" and len(data) >= 3:
            future = self._pending_ok.get(data[1], {}).get(url)
            if future is not None and not future.done():
                future.set_result((bool(data[2]), data[3] if len(data) > 3 else ""))

        elif message_type == "NOTICE":
            logger.info(f"Relay {url} notice: {data[1] if len(data) > 1 else ''}")

    # ==================== SUBSCRIPTIONS ====================

    async def subscribe_many(
        self, filters: List[Dict[str, Any]], on_event: EventHandler, sub_id: Optional[str] = None
    ) -> Subscription:
        """Open one REQ with all filters on every relay"""
        await self._ensure_connected()
        subscription = Subscription(self, sub_id or uuid.uuid4().hex[:16], filters, on_event)
        self.subscriptions[subscription.id] = subscription
        sent = await self._broadcast(["REQ", subscription.id, *filters])
        if not sent:
            logger.warning(f"Subscription {subscription.id} reached no relay")
        return subscription

    async def close_subscription(self, sub_id: str) -> None:
        if self.subscriptions.pop(sub_id, None) is not None:
            await self._broadcast(["CLOSE", sub_id])

    async def query(self, filters: List[Dict[str, Any]], timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Stored events matching filters, collected until every relay sent EOSE"""
        events: List[Dict[str, Any]] = []
        subscription = await self.subscribe_many(filters, events.append)
        if not self.connections:
            await subscription.close()
            return events
        try:
            await asyncio.wait_for(subscription.eose.wait(), timeout=timeout or self.publish_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Query {subscription.id} timed out before EOSE")
        finally:
            await subscription.close()
        return events

    # ==================== PUBLISH ====================

    @staticmethod
    async def _await_ok(url: str, future: asyncio.Future) -> tuple:
        accepted, message = await future
        return url, accepted, message

    async def publish(self, event: Dict[str, Any]) -> str:
        """Broadcast a signed event; returns the first relay that accepted it"""
        await self._ensure_connected()
        loop = asyncio.get_running_loop()
        futures = {url: loop.create_future() for url in self.connections}
        self._pending_ok[event["id"]] = futures

        tasks: List[asyncio.Task] = []
        reasons = []
        try:
            sent = await self._broadcast(["EVENT", event])
            tasks = [asyncio.create_task(self._await_ok(url, futures[url])) for url in sent]
            for done in asyncio.as_completed(tasks, timeout=self.publish_timeout):
                try:
                    url, accepted, message = await done
                except asyncio.TimeoutError:
                    reasons.append("timed out")
                    break
                if accepted:
                    logger.info(f"Event {event['id']} accepted by {url}")
                    return url
                reasons.append(f"{url}: {message}")
        finally:
            for task in tasks:
                task.cancel()
            self._pending_ok.pop(event["id"], None)

        raise PublishError(f"Event {event['id']} rejected by all relays: {reasons}")

    async def close(self) -> None:
        self._closing = True
        for task in list(self._readers.values()) + list(self._reconnects.values()):
            task.cancel()
        for ws in list(self.connections.values()):
            try:
                await ws.close()
            except websockets.exceptions.WebSocketException as e:
                logger.debug(f"Error closing relay socket: {e}")
        self.connections.clear()
        self._readers.clear()
        self._reconnects.clear()
        self.subscriptions.clear()
