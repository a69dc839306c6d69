"""
Blockchain data providers
One capability interface, one concrete variant per supported namespace
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from cache import CacheKey, CacheKind, MemoryCache, MultiTierCache
from chains import ChainConfig
from config import config
from errors import ConfigurationError, TokenResolutionError
from models import LogEvent, LogFilter, Token, Transaction, TxReceipt
from uri import Namespace

logger = logging.getLogger(__name__)


def create_session(retry_count: Optional[int] = None) -> requests.Session:
    """requests session with retry on transient HTTP status codes"""
    session = requests.Session()
    retry = Retry(
        total=config.RPC_RETRY_COUNT if retry_count is None else retry_count,
        backoff_factor=0.5,
        status_forcelist=[500, 502, 503, 504],
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class BlockchainDataProvider(ABC):
    """
    Per-namespace adapter for chain data

    Blocking HTTP work runs in worker threads so the async contract never
    stalls the event loop.
    """

    namespace: Namespace

    def __init__(
        self,
        chain_config: ChainConfig,
        cache: Optional[MultiTierCache] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[int] = None,
    ):
        self.chain_config = chain_config
        self.chain = chain_config.slug
        self.cache = cache or MultiTierCache(MemoryCache(max_size=2000))
        self.session = session or create_session()
        self.timeout = timeout or config.RPC_TIMEOUT

    # ==================== CONTRACT ====================

    @abstractmethod
    async def get_block_number(self) -> int:
        """Current chain head"""

    @abstractmethod
    async def get_logs(self, log_filter: LogFilter) -> List[LogEvent]:
        """Raw matching events in the filter's block range"""

    @abstractmethod
    async def get_tx_receipt(self, chain: str, tx_id: str) -> Optional[TxReceipt]:
        """Decoded events of a confirmed transaction, None when unresolvable"""

    @abstractmethod
    def transfer_filters(
        self,
        account: Optional[str] = None,
        token: Optional[str] = None,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> List[LogFilter]:
        """From-leg and to-leg filters for an account and/or token"""

    @abstractmethod
    def decode_transfer(self, log: LogEvent) -> Optional[Transaction]:
        """Unresolved transaction from a raw log; None if it is not a transfer"""

    @abstractmethod
    def _fetch_token_details(self, token_address: str) -> Token:
        """Blocking token metadata lookup; raises TokenResolutionError"""

    @abstractmethod
    def _fetch_block_timestamp(self, block_number: int) -> int:
        """Blocking block timestamp lookup"""

    # ==================== SHARED BEHAVIOR ====================

    async def get_token_details(self, chain: str, token_address: str) -> Token:
        """Token metadata, cached; never raises and degrades to the unknown token"""
        key = CacheKey(CacheKind.TOKEN, chain, token_address)
        cached = self.cache.get(key)
        if cached is not None:
            return Token.from_dict(cached)

        try:
            token = await asyncio.to_thread(self._fetch_token_details, token_address)
        except Exception as e:
            if isinstance(e, TokenResolutionError):
                logger.warning(f"Token details unavailable for {chain}:{token_address}: {e}")
            else:
                logger.error(f"Error fetching token details for {chain}:{token_address}: {e}")
            # The fallback expires sooner than resolved metadata
            token = Token.unknown(token_address)
            self.cache.set(key, token.to_dict(), ttl=config.CACHE_TTL_MEDIUM)
            return token

        self.cache.set(key, token.to_dict())
        return token

    async def get_block_timestamp(self, chain: str, block_number: int) -> int:
        """Block timestamp in seconds, cached by (chain, block)"""
        key = CacheKey(CacheKind.BLOCK_TIMESTAMP, chain, extra=(str(block_number),))
        cached = self.cache.get(key)
        if cached is not None:
            return int(cached)

        timestamp = await asyncio.to_thread(self._fetch_block_timestamp, block_number)
        self.cache.set(key, timestamp)
        return timestamp

    async def log_to_transaction(self, chain: str, log: LogEvent) -> Optional[Transaction]:
        """Decode a raw log and resolve its token metadata and timestamp"""
        tx = self.decode_transfer(log)
        if tx is None:
            return None
        tx.token = await self.get_token_details(chain, tx.token.address)
        if tx.timestamp is None:
            tx.timestamp = await self.get_block_timestamp(chain, tx.block_number)
        return tx

    async def get_block_range(
        self, chain: str, address: str, from_block: int, to_block: int
    ) -> List[Transaction]:
        """Resolved transfers into and out of address in the window, newest first"""
        logs: List[LogEvent] = []
        for log_filter in self.transfer_filters(account=address, from_block=from_block, to_block=to_block):
            logs.extend(await self.get_logs(log_filter))

        transactions = []
        for log in logs:
            try:
                tx = await self.log_to_transaction(chain, log)
            except Exception as e:
                logger.warning(f"Skipping undecodable log {log.tx_hash}:{log.log_index}: {e}")
                continue
            if tx is not None:
                transactions.append(tx)

        transactions.sort(key=lambda tx: tx.sort_key, reverse=True)
        return transactions

    async def get_address_type(self, address: str) -> Optional[str]:
        """eoa | contract | token, where the namespace can tell"""
        return None

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a JSON document with error handling"""
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            logger.error(f"Request failed: {url} - {e}")
            raise


def create_provider(
    chain_config: ChainConfig,
    cache: Optional[MultiTierCache] = None,
    session: Optional[requests.Session] = None,
) -> BlockchainDataProvider:
    """Select the provider variant once, by namespace"""
    # Local imports: the variants subclass BlockchainDataProvider
    from evm_provider import EIP155DataProvider
    from stacks_provider import StacksDataProvider

    if chain_config.namespace is Namespace.EIP155:
        return EIP155DataProvider(chain_config, cache=cache, session=session)
    if chain_config.namespace is Namespace.STACKS:
        return StacksDataProvider(chain_config, cache=cache, session=session)
    raise ConfigurationError(
        f"Namespace {chain_config.namespace.value} is not supported for chain {chain_config.slug}"
    )
