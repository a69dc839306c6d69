"""
Live ingestion engine
Discovers new transfer events by polling getLogs windows or by streaming, rate-limits
them and keeps a bounded newest-first buffer
"""

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional

from config import config
from errors import NetworkError
from models import LogEvent, Transaction
from providers import BlockchainDataProvider
from rate_limiting import EventRateLimiter
from stream import ConnectionState, LogStream
from uri import Namespace

logger = logging.getLogger(__name__)


class EngineState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    POLLING = "polling"
    STREAMING = "streaming"
    STOPPED = "stopped"


TransactionListener = Callable[[Transaction], None]


class LiveIngestionEngine:
    """
    Live transfer feed for one account and/or token on one chain

    Polling advances last_processed_block through fixed-size windows,
    querying both transfer legs per window. Streaming subscribes to the same
    filters over WebSocket. Either way every matched log passes through one
    EventRateLimiter before it is resolved and buffered.
    """

    def __init__(
        self,
        provider: BlockchainDataProvider,
        account: Optional[str] = None,
        token: Optional[str] = None,
        start_block: Optional[int] = None,
        prefer_streaming: Optional[bool] = None,
        poll_interval: Optional[float] = None,
        block_window: Optional[int] = None,
        backpressure_per_log: Optional[float] = None,
        buffer_size: Optional[int] = None,
        limiter: Optional[EventRateLimiter] = None,
        stream_factory: Callable[..., LogStream] = LogStream,
    ):
        self.provider = provider
        self.chain = provider.chain
        self.account = account
        self.token = token
        self.filters = provider.transfer_filters(account=account, token=token)
        self.last_processed_block = start_block
        self.prefer_streaming = config.PREFER_STREAMING if prefer_streaming is None else prefer_streaming
        self.poll_interval = config.POLL_INTERVAL if poll_interval is None else poll_interval
        self.block_window = block_window or config.BLOCK_WINDOW
        self.backpressure_per_log = (
            config.BACKPRESSURE_PER_LOG if backpressure_per_log is None else backpressure_per_log
        )
        self.buffer: Deque[Transaction] = deque(maxlen=buffer_size or config.LIVE_BUFFER_SIZE)
        self.limiter = limiter or EventRateLimiter()
        self.stream_factory = stream_factory

        self.state = EngineState.IDLE
        self.error: Optional[BaseException] = None
        self.is_connected = False
        self.stream: Optional[LogStream] = None
        self._listeners: List[TransactionListener] = []
        self._tick_lock = asyncio.Lock()
        self._stop = asyncio.Event()

    def _set_state(self, state: EngineState) -> None:
        self.state = state
        logger.info(f"Live ingestion on {self.chain} for {self.account or self.token}: {state.value}")

    def add_listener(self, listener: TransactionListener) -> None:
        self._listeners.append(listener)

    @property
    def streaming_available(self) -> bool:
        chain_config = self.provider.chain_config
        return chain_config.namespace is Namespace.EIP155 and chain_config.supports_streaming

    # ==================== LIFECYCLE ====================

    async def start(self) -> EngineState:
        """Resolve the starting block and pick polling or streaming"""
        self._set_state(EngineState.STARTING)
        if self.last_processed_block is None:
            self.last_processed_block = await self.provider.get_block_number()

        mode = (
            EngineState.STREAMING
            if self.prefer_streaming and self.streaming_available
            else EngineState.POLLING
        )
        self._set_state(mode)
        return mode

    async def run(self) -> None:
        """Ingest until stop(); an escaping error stops the engine and is re-raised"""
        try:
            if self.state is EngineState.IDLE:
                await self.start()
            if self.state is EngineState.STREAMING:
                await self._run_streaming()
            else:
                await self._run_polling()
        except Exception as e:
            logger.error(f"Live ingestion on {self.chain} stopped: {e}")
            self.error = e
            self.is_connected = False
            self._set_state(EngineState.STOPPED)
            raise

        if self.state is not EngineState.STOPPED:
            self._set_state(EngineState.STOPPED)

    async def stop(self) -> None:
        self._stop.set()
        if self.stream is not None:
            await self.stream.stop()
        self.is_connected = False
        self._set_state(EngineState.STOPPED)

    # ==================== POLLING ====================

    async def _run_polling(self) -> None:
        self.is_connected = True
        while not self._stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def tick(self) -> int:
        """
        One polling pass from last_processed_block + 1 to the head

        Returns the number of logs fed to the dispatcher. An overlapping call
        returns 0 without querying anything.
        """
        if self._tick_lock.locked():
            logger.debug(f"Polling tick on {self.chain} still running, skipping")
            return 0

        async with self._tick_lock:
            try:
                head = await self.provider.get_block_number()
            except NetworkError:
                raise
            except Exception as e:
                logger.error(f"Failed to read the head block on {self.chain}: {e}")
                return 0
            if self.last_processed_block is None:
                self.last_processed_block = head
                return 0
            if head <= self.last_processed_block:
                return 0

            processed = 0
            from_block = self.last_processed_block + 1
            while from_block <= head and not self._stop.is_set():
                to_block = min(from_block + self.block_window - 1, head)
                try:
                    logs = await self._window_logs(from_block, to_block)
                except NetworkError:
                    raise
                except Exception as e:
                    logger.error(f"Failed to fetch logs {from_block}-{to_block} on {self.chain}: {e}")
                    break

                for log in logs:
                    await self.dispatch(log)
                self.last_processed_block = to_block
                processed += len(logs)

                if logs and self.backpressure_per_log:
                    await asyncio.sleep(len(logs) * self.backpressure_per_log)
                from_block = to_block + 1

            return processed

    async def _window_logs(self, from_block: int, to_block: int) -> List[LogEvent]:
        """Both legs of one window, oldest first, without duplicates"""
        logs: Dict[tuple, LogEvent] = {}
        for log_filter in self.filters:
            for log in await self.provider.get_logs(log_filter.with_range(from_block, to_block)):
                logs.setdefault((log.tx_hash.lower(), log.log_index), log)
        return sorted(logs.values(), key=lambda log: (log.block_number, log.tx_index, log.log_index))

    # ==================== STREAMING ====================

    def _on_stream_state(self, state: ConnectionState) -> None:
        self.is_connected = state is ConnectionState.OPEN

    async def _run_streaming(self) -> None:
        self.stream = self.stream_factory(
            self.provider.chain_config.ws,
            self.filters,
            self.dispatch,
            name=f"{self.chain} ws",
        )
        self.stream.add_state_listener(self._on_stream_state)
        await self.stream.run()

    # ==================== DISPATCH ====================

    async def dispatch(self, log: LogEvent) -> Optional[Transaction]:
        """Rate-limit, resolve and buffer one matched log"""
        if not self.limiter.try_acquire():
            return None

        try:
            tx = await self.provider.log_to_transaction(self.chain, log)
        except Exception as e:
            logger.warning(f"Discarding live log {log.tx_hash}:{log.log_index}: {e}")
            return None
        if tx is None:
            return None

        self.buffer.appendleft(tx)
        for listener in self._listeners:
            try:
                listener(tx)
            except Exception as e:
                logger.error(f"Live transaction listener failed: {e}")
        return tx

    def snapshot(self) -> List[Transaction]:
        """Buffered live transfers, newest first"""
        return list(self.buffer)

    def skipped_summary(self) -> Dict[str, Optional[float]]:
        return {"count": self.limiter.skipped, "since": self.limiter.skip_since}

    def acknowledge_skipped(self) -> int:
        return self.limiter.acknowledge()

    def status(self) -> Dict:
        return {
            "chain": self.chain,
            "account": self.account,
            "token": self.token,
            "state": self.state.value,
            "connected": self.is_connected,
            "lastProcessedBlock": self.last_processed_block,
            "skipped": self.skipped_summary(),
            "error": str(self.error) if self.error else None,
        }
