"""
Block explorer REST client (Etherscan v2 compatible)
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from cache import CacheKey, CacheKind, MultiTierCache
from chains import ChainEndpointRegistry
from config import config
from errors import ConfigurationError, UpstreamError
from models import DEFAULT_DECIMALS, NATIVE_TOKEN_ADDRESS, Token, Transaction
from providers import create_session

logger = logging.getLogger(__name__)


TOKEN_TRANSFERS = "tokentx"
NATIVE_TRANSFERS = "txlist"

# The explorer caps one account query at this many records
MAX_RESULT_RECORDS = 10000


def normalize_etherscan_transfer(
    record: Dict[str, Any], native_token: Optional[Dict[str, Any]] = None
) -> Transaction:
    """Explorer record -> Transaction"""
    if native_token is not None:
        token = Token(
            address=NATIVE_TOKEN_ADDRESS,
            name=native_token.get("name"),
            symbol=native_token.get("symbol"),
            decimals=int(native_token.get("decimals", DEFAULT_DECIMALS)),
        )
    else:
        try:
            decimals = int(record.get("tokenDecimal") or 0) or DEFAULT_DECIMALS
        except ValueError:
            decimals = DEFAULT_DECIMALS
        token = Token(
            address=(record.get("contractAddress") or "").lower(),
            name=record.get("tokenName"),
            symbol=record.get("tokenSymbol"),
            decimals=decimals,
        )

    log_index = record.get("logIndex")
    return Transaction(
        tx_hash=record["hash"],
        block_number=int(record["blockNumber"]),
        tx_index=int(record.get("transactionIndex") or 0),
        log_index=int(log_index) if log_index not in (None, "") else None,
        timestamp=int(record["timeStamp"]) if record.get("timeStamp") else None,
        from_address=(record.get("from") or "").lower(),
        to_address=(record.get("to") or "").lower(),
        value=str(record.get("value", "0")),
        token=token,
    )


def normalize_etherscan_transfers(
    records: Any, native_token: Optional[Dict[str, Any]] = None
) -> List[Transaction]:
    if not isinstance(records, list):
        return []
    return [normalize_etherscan_transfer(record, native_token) for record in records]


class EtherscanClient:
    """Account transfer history from a chain's block explorer API"""

    def __init__(
        self,
        registry: ChainEndpointRegistry,
        session: Optional[requests.Session] = None,
        timeout: Optional[int] = None,
        cache: Optional[MultiTierCache] = None,
    ):
        self.registry = registry
        self.session = session or create_session()
        self.timeout = timeout or config.RPC_TIMEOUT
        self.cache = cache

    def _params(
        self,
        chain: str,
        action: str,
        address: Optional[str] = None,
        contractaddress: Optional[str] = None,
    ) -> Dict[str, str]:
        chain_config = self.registry.get(chain)
        params = {
            "module": "account",
            "action": action,
            "startblock": "0",
            "endblock": "99999999",
            "sort": "desc",
            "chainid": str(chain_config.id),
            "apikey": config.get_explorer_api_key(chain),
        }
        if address:
            params["address"] = address
        if contractaddress and action == TOKEN_TRANSFERS:
            params["contractaddress"] = contractaddress
        return params

    def fetch_raw(
        self,
        chain: str,
        address: Optional[str] = None,
        contractaddress: Optional[str] = None,
        action: str = TOKEN_TRANSFERS,
    ) -> Dict[str, Any]:
        """Explorer response payload; raises UpstreamError unless status is "1" """
        chain_config = self.registry.get(chain)
        if not chain_config.explorer_api:
            raise ConfigurationError(f"No explorer API found for chain {chain}")

        params = self._params(chain, action, address, contractaddress)
        url = f"{chain_config.explorer_api.rstrip('/')}/v2/api"

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Explorer request failed for {chain}: {e}")
            raise UpstreamError(f"Explorer request failed for {chain}: {e}") from e

        if data.get("status") != "1":
            logger.error(f"Explorer returned an error for {chain}: {data}")
            raise UpstreamError(
                f"Explorer returned status {data.get('status')} ({data.get('result')})",
                payload=data,
            )
        return data

    def fetch_cached(
        self,
        chain: str,
        address: Optional[str] = None,
        contractaddress: Optional[str] = None,
        action: str = TOKEN_TRANSFERS,
    ) -> Tuple[Dict[str, Any], bool]:
        """fetch_raw behind the explorer response cache; returns (payload, cache_hit)"""
        if self.cache is None:
            return self.fetch_raw(chain, address, contractaddress, action=action), False

        key = CacheKey(CacheKind.EXPLORER, chain, address, extra=(contractaddress or "", action))
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Explorer cache hit {key.render()}")
            return cached, True

        data = self.fetch_raw(chain, address, contractaddress, action=action)
        self.cache.set(key, data)
        return data, False

    def fetch_token_transfers(
        self,
        chain: str,
        address: Optional[str] = None,
        contractaddress: Optional[str] = None,
    ) -> List[Transaction]:
        data, _ = self.fetch_cached(chain, address, contractaddress)
        return normalize_etherscan_transfers(data.get("result"))

    def fetch_native_transfers(self, chain: str, address: str) -> List[Transaction]:
        """Native coin transfers, tagged with the chain's native token"""
        chain_config = self.registry.get(chain)
        native_token = chain_config.native_token
        if native_token is None and "ethereum" in self.registry:
            native_token = self.registry.get("ethereum").native_token
        if native_token is None:
            return []

        data, _ = self.fetch_cached(chain, address, action=NATIVE_TRANSFERS)
        return normalize_etherscan_transfers(data.get("result"), native_token)
