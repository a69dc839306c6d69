"""
Historical transaction fetcher
One batch snapshot of an address's or token's transfers from the block explorer
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

import requests

from chains import ChainConfig, ChainEndpointRegistry
from config import config
from errors import UpstreamError
from explorer_api import (
    MAX_RESULT_RECORDS,
    NATIVE_TRANSFERS,
    TOKEN_TRANSFERS,
    EtherscanClient,
    normalize_etherscan_transfers,
)
from merger import merge
from models import Transaction
from providers import BlockchainDataProvider, create_provider, create_session
from uri import Namespace

logger = logging.getLogger(__name__)


class HistoricalTransactionFetcher:
    """
    Fetch transfer history through the explorer proxy or an in-process client

    Results are deduplicated and sorted newest first by (block, tx index,
    log index). Nothing is written locally; callers decide what to persist.
    """

    def __init__(
        self,
        registry: ChainEndpointRegistry,
        proxy_url: Optional[str] = None,
        client: Optional[EtherscanClient] = None,
        provider_factory: Callable[[ChainConfig], BlockchainDataProvider] = create_provider,
        session: Optional[requests.Session] = None,
    ):
        self.registry = registry
        self.proxy_url = (config.EXPLORER_PROXY_URL if proxy_url is None else proxy_url).rstrip("/")
        self.session = session or create_session()
        self.client = client or EtherscanClient(registry, session=self.session)
        self.provider_factory = provider_factory
        self._providers: Dict[str, BlockchainDataProvider] = {}

    def _provider(self, chain_config: ChainConfig) -> BlockchainDataProvider:
        if chain_config.slug not in self._providers:
            self._providers[chain_config.slug] = self.provider_factory(chain_config)
        return self._providers[chain_config.slug]

    async def _query_params(
        self, chain_config: ChainConfig, account: Optional[str], token: Optional[str]
    ) -> Tuple[Optional[str], Optional[str]]:
        """(address, contractaddress); a token contract account is queried as a contract"""
        address, contractaddress = account, token
        if account and not token and chain_config.namespace is Namespace.EIP155:
            try:
                address_type = await self._provider(chain_config).get_address_type(account)
            except Exception as e:
                logger.warning(f"Address type lookup failed for {account}: {e}")
                address_type = None
            if address_type == "token":
                address, contractaddress = None, account
        return address, contractaddress

    def _fetch_via_proxy(
        self,
        chain: str,
        address: Optional[str],
        contractaddress: Optional[str],
        action: str = TOKEN_TRANSFERS,
    ) -> List[dict]:
        params = {"chain": chain, "action": action}
        if address:
            params["address"] = address
        if contractaddress:
            params["contractaddress"] = contractaddress

        try:
            response = self.session.get(
                f"{self.proxy_url}/api/etherscan", params=params, timeout=config.RPC_TIMEOUT
            )
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Explorer proxy request failed for {chain}: {e}")
            raise UpstreamError(f"Explorer proxy request failed: {e}") from e

        if response.status_code != 200 or data.get("status") != "1":
            logger.error(f"Explorer proxy returned an error for {chain}: {data}")
            raise UpstreamError(f"Explorer proxy returned {response.status_code}", payload=data)
        return data.get("result") or []

    def _fetch_token_transfers(
        self, chain: str, address: Optional[str], contractaddress: Optional[str]
    ) -> List[Transaction]:
        if self.proxy_url:
            return normalize_etherscan_transfers(
                self._fetch_via_proxy(chain, address, contractaddress)
            )
        return self.client.fetch_token_transfers(chain, address, contractaddress)

    def _fetch_native_transfers(self, chain_config: ChainConfig, address: str) -> List[Transaction]:
        if not self.proxy_url:
            return self.client.fetch_native_transfers(chain_config.slug, address)
        if not chain_config.native_token:
            return []
        records = self._fetch_via_proxy(chain_config.slug, address, None, action=NATIVE_TRANSFERS)
        return normalize_etherscan_transfers(records, chain_config.native_token)

    async def fetch_all(
        self,
        chain: str,
        account: Optional[str] = None,
        token: Optional[str] = None,
        include_native: bool = False,
    ) -> List[Transaction]:
        """All explorer-known transfers for an account and/or token, newest first"""
        chain_config = self.registry.get(chain)
        if not account and not token:
            raise ValueError("An account or a token address is required")

        address, contractaddress = await self._query_params(chain_config, account, token)
        transactions = await asyncio.to_thread(
            self._fetch_token_transfers, chain_config.slug, address, contractaddress
        )

        if include_native and address:
            native = await asyncio.to_thread(self._fetch_native_transfers, chain_config, address)
            transactions.extend(native)

        # Explorer results can repeat a record
        transactions = merge(transactions, [])
        logger.info(f"Fetched {len(transactions)} historical transfers on {chain_config.slug}")
        return transactions

    async def get_block_range_for_address(
        self, chain: str, address: str
    ) -> Optional[Tuple[int, Optional[int]]]:
        """
        (first_block, last_block) of an address's explorer history

        first_block comes from the newest record; last_block is None when the
        explorer truncated the result.
        """
        transactions = await self.fetch_all(chain, account=address)
        if not transactions:
            logger.info(f"No transactions found for {chain}:{address}")
            return None

        first_block = transactions[0].block_number
        last_block = (
            transactions[-1].block_number if len(transactions) < MAX_RESULT_RECORDS else None
        )
        return first_block, last_block
