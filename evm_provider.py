"""
EIP155 (account-based, EVM) data provider
JSON-RPC over HTTP with endpoint failover, ERC20 Transfer decoding via eth-abi
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any, List, Optional

import requests
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import (
    decode_hex,
    encode_hex,
    function_signature_to_4byte_selector,
    is_address,
    keccak,
)

from cache import CacheKey, CacheKind
from endpoint_rotation import EndpointRotation
from errors import NetworkError, TokenResolutionError, UpstreamError
from models import LogEvent, LogFilter, Token, Transaction, TxReceipt
from providers import BlockchainDataProvider
from uri import Namespace

logger = logging.getLogger(__name__)


TRANSFER_TOPIC = encode_hex(keccak(text="Transfer(address,address,uint256)"))

# ERC-1967 implementation slot
PROXY_SLOT_SIG = "360894a13ba1a3210667c828492db98dca3e2076cc3735a920a3ca505d382bbc"

ERC20_SELECTORS = {
    name: encode_hex(function_signature_to_4byte_selector(f"{name}()"))
    for name in ("name", "symbol", "decimals")
}

# transfer(address,uint256), balanceOf(address), totalSupply()
ERC20_CODE_SIGS = ("a9059cbb", "70a08231", "18160ddd")


def pad_address_topic(address: str) -> str:
    """Account address left-zero-padded to a 32-byte topic"""
    if not is_address(address):
        raise ValueError(f"Invalid address: {address}")
    return "0x" + address.lower()[2:].rjust(64, "0")


def topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


class EIP155DataProvider(BlockchainDataProvider):
    """EVM chains: eth_getLogs, eth_call token metadata, receipts"""

    namespace = Namespace.EIP155

    def __init__(self, chain_config, cache=None, session=None, timeout=None):
        super().__init__(chain_config, cache=cache, session=session, timeout=timeout)
        self.rotation = EndpointRotation(chain_config.rpc, name=f"{chain_config.slug} rpc")
        self._request_id = 0

    # ==================== JSON-RPC ====================

    def _rpc(self, method: str, params: List[Any]) -> Any:
        """JSON-RPC call with failover across the chain's RPC endpoints"""

        def call(endpoint: str) -> Any:
            self._request_id += 1
            response = self.session.post(
                endpoint,
                json={"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
            if payload.get("error"):
                raise UpstreamError(
                    f"{method} failed on {endpoint}: {payload['error']}", payload=payload
                )
            return payload.get("result")

        return self.rotation.attempt(
            call, retry_on=(requests.exceptions.RequestException, ValueError, UpstreamError)
        )

    async def get_block_number(self) -> int:
        result = await asyncio.to_thread(self._rpc, "eth_blockNumber", [])
        return int(result, 16)

    async def get_logs(self, log_filter: LogFilter) -> List[LogEvent]:
        result = await asyncio.to_thread(self._rpc, "eth_getLogs", [log_filter.to_rpc()])
        return [LogEvent.from_rpc(log) for log in result or []]

    # ==================== TRANSFERS ====================

    def transfer_filters(
        self,
        account: Optional[str] = None,
        token: Optional[str] = None,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> List[LogFilter]:
        token = token.lower() if token else None
        if account:
            padded = pad_address_topic(account)
            return [
                LogFilter(from_block, to_block, [TRANSFER_TOPIC, padded], address=token),
                LogFilter(from_block, to_block, [TRANSFER_TOPIC, None, padded], address=token),
            ]
        if token:
            return [LogFilter(from_block, to_block, [TRANSFER_TOPIC], address=token)]
        raise ValueError("An account or a token address is required")

    def decode_transfer(self, log: LogEvent) -> Optional[Transaction]:
        # ERC721 Transfer carries a 4th indexed topic and no data word
        if len(log.topics) != 3 or log.topics[0].lower() != TRANSFER_TOPIC:
            logger.debug(f"Not an ERC20 Transfer log: {log.tx_hash}:{log.log_index}")
            return None
        try:
            (value,) = abi_decode(["uint256"], decode_hex(log.data))
        except (DecodingError, ValueError) as e:
            logger.warning(f"Error parsing log {log.tx_hash}:{log.log_index}: {e}")
            return None

        return Transaction(
            tx_hash=log.tx_hash,
            block_number=log.block_number,
            tx_index=log.tx_index,
            log_index=log.log_index,
            from_address=topic_to_address(log.topics[1]),
            to_address=topic_to_address(log.topics[2]),
            value=str(value),
            token=Token(address=log.address),
            timestamp=log.timestamp,
        )

    # ==================== TOKENS & BLOCKS ====================

    def _call(self, to: str, data: str) -> bytes:
        result = self._rpc("eth_call", [{"to": to, "data": data}, "latest"])
        if not result or result == "0x":
            raise TokenResolutionError(f"Empty eth_call result from {to}")
        return decode_hex(result)

    def _fetch_token_details(self, token_address: str) -> Token:
        if not is_address(token_address):
            raise TokenResolutionError(f"Invalid contract address: {token_address}")
        try:
            (name,) = abi_decode(["string"], self._call(token_address, ERC20_SELECTORS["name"]))
            (symbol,) = abi_decode(["string"], self._call(token_address, ERC20_SELECTORS["symbol"]))
            (decimals,) = abi_decode(["uint8"], self._call(token_address, ERC20_SELECTORS["decimals"]))
        except (DecodingError, NetworkError, UpstreamError, ValueError) as e:
            raise TokenResolutionError(str(e)) from e
        return Token(address=token_address, name=name, symbol=symbol, decimals=int(decimals))

    def _fetch_block_timestamp(self, block_number: int) -> int:
        block = self._rpc("eth_getBlockByNumber", [hex(block_number), False])
        if not block:
            raise UpstreamError(f"Block not found: {block_number}")
        return int(block["timestamp"], 16)

    async def get_address_type(self, address: str) -> Optional[str]:
        """eoa | contract | token, from the deployed bytecode"""
        key = CacheKey(CacheKind.ADDRESS_TYPE, self.chain, address)
        cached = self.cache.get(key)
        if cached:
            return cached

        code = await asyncio.to_thread(self._rpc, "eth_getCode", [address, "latest"])
        code = (code or "0x").lower()
        if code == "0x":
            address_type = "eoa"
        elif PROXY_SLOT_SIG in code:
            try:
                await asyncio.to_thread(self._fetch_token_details, address)
                address_type = "token"
            except TokenResolutionError:
                address_type = "contract"
        elif all(sig in code for sig in ERC20_CODE_SIGS):
            address_type = "token"
        else:
            address_type = "contract"

        logger.info(f"{address} on {self.chain} is a {address_type}")
        self.cache.set(key, address_type)
        return address_type

    # ==================== RECEIPTS ====================

    async def get_tx_receipt(self, chain: str, tx_id: str) -> Optional[TxReceipt]:
        key = CacheKey(CacheKind.TX_RECEIPT, chain, extra=(tx_id,))
        cached = self.cache.get(key)
        if cached:
            return TxReceipt(**cached)

        tx = await asyncio.to_thread(self._rpc, "eth_getTransactionByHash", [tx_id])
        if not tx or not tx.get("to"):
            return None
        receipt = await asyncio.to_thread(self._rpc, "eth_getTransactionReceipt", [tx_id])
        if not receipt:
            return None

        block_number = int(receipt["blockNumber"], 16)
        timestamp = await self.get_block_timestamp(chain, block_number)
        chain_id = int(tx["chainId"], 16) if tx.get("chainId") else self.chain_config.id
        contract_address = tx["to"].lower()

        try:
            events = []
            for raw in receipt.get("logs") or []:
                log = LogEvent.from_rpc(raw)
                transfer = self.decode_transfer(log)
                if transfer is None:
                    continue
                # The Transfer log's emitter is the token, even behind a proxy
                contract_address = log.address
                events.append(
                    {
                        "name": "Transfer",
                        "args": [transfer.from_address, transfer.to_address, transfer.value],
                        "address": log.address,
                    }
                )
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Error decoding transaction {tx_id}: {e}")
            return TxReceipt(chain_id, tx["hash"], block_number, timestamp, tx["to"].lower(), [])

        result = TxReceipt(chain_id, tx["hash"], block_number, timestamp, contract_address, events)
        self.cache.set(key, asdict(result))
        return result
