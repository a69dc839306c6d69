"""
Stacks (contract-principal) data provider
Hiro REST API: blocks, transactions, transfer events and token metadata
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import requests

from cache import CacheKey, CacheKind
from endpoint_rotation import EndpointRotation
from errors import TokenResolutionError, UpstreamError
from models import LogEvent, LogFilter, Token, Transaction, TxReceipt
from providers import BlockchainDataProvider
from uri import Namespace

logger = logging.getLogger(__name__)


STX_ADDRESS = "STX"
STX_TOKEN = Token(address=STX_ADDRESS, name="Stacks", symbol="STX", decimals=6)

UNCONFIRMED_STATUSES = {
    "pending",
    "dropped_replace_by_fee",
    "dropped_problematic",
    "dropped_replace_across_fork",
    "dropped_stale_garbage_collect",
    "dropped_too_expensive",
}
CONFIRMED_STATUSES = {"success", "abort_by_response", "abort_by_post_condition"}

STACKS_ADDRESS_RE = re.compile(r"^S[0-9A-Z]{27,41}$")

PAGE_SIZE = 50
MAX_PAGES = 20


def is_stacks_address(address: str) -> bool:
    return bool(STACKS_ADDRESS_RE.match(address.upper()))


def is_contract_principal(principal: str) -> bool:
    address, _, contract_name = principal.partition(".")
    return is_stacks_address(address) and len(contract_name) > 0


def asset_contract(asset_id: str) -> str:
    """`SP..contract::asset` -> `SP..contract`"""
    return asset_id.split("::")[0]


def event_to_log_event(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Map a Hiro transaction event to a {name, args, address} summary"""
    event_type = event.get("event_type")
    asset = event.get("asset") or {}

    if event_type == "smart_contract_log":
        contract_log = event.get("contract_log") or {}
        return {
            "name": contract_log.get("topic"),
            "args": [(contract_log.get("value") or {}).get("repr")],
            "address": contract_log.get("contract_id"),
        }
    if event_type == "fungible_token_asset":
        asset_event_type = asset.get("asset_event_type")
        return {
            "name": "Transfer" if asset_event_type == "transfer" else asset_event_type,
            "args": [
                asset.get("sender"),
                asset.get("recipient"),
                str(asset.get("amount")),
                asset.get("asset_id"),
            ],
            "address": asset_contract(asset.get("asset_id", "")),
        }
    if event_type == "non_fungible_token_asset":
        return {
            "name": asset.get("asset_event_type"),
            "args": [
                "nft",
                asset.get("sender"),
                asset.get("recipient"),
                asset.get("value"),
                asset.get("asset_id"),
            ],
            "address": asset_contract(asset.get("asset_id", "")),
        }
    if event_type == "stx_asset":
        return {
            "name": asset.get("asset_event_type"),
            "args": [asset.get("sender"), asset.get("recipient"), str(asset.get("amount"))],
            "address": STX_ADDRESS,
        }

    logger.warning(f"Unknown event type: {event_type}")
    return None


class StacksDataProvider(BlockchainDataProvider):
    """Stacks chains through the Hiro blockchain and token metadata APIs"""

    namespace = Namespace.STACKS

    def __init__(self, chain_config, cache=None, session=None, timeout=None):
        super().__init__(chain_config, cache=cache, session=session, timeout=timeout)
        self.rotation = EndpointRotation(chain_config.rpc, name=f"{chain_config.slug} api")

    def _api(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET a Hiro API path with failover; None on 404"""

        def call(base_url: str) -> Any:
            response = self.session.get(
                f"{base_url.rstrip('/')}{path}", params=params, timeout=self.timeout
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()

        return self.rotation.attempt(
            call, retry_on=(requests.exceptions.RequestException, ValueError)
        )

    async def get_block_number(self) -> int:
        data = await asyncio.to_thread(self._api, "/extended/v2/blocks", {"limit": 1})
        results = (data or {}).get("results") or []
        if not results:
            raise UpstreamError("Unable to read Stacks chain height")
        return int(results[0]["height"])

    # ==================== TRANSFERS ====================

    def transfer_filters(
        self,
        account: Optional[str] = None,
        token: Optional[str] = None,
        from_block: Optional[int] = None,
        to_block: Optional[int] = None,
    ) -> List[LogFilter]:
        if account:
            return [
                LogFilter(from_block, to_block, address=token, account=account, direction="from"),
                LogFilter(from_block, to_block, address=token, account=account, direction="to"),
            ]
        if token:
            # Transfers are indexed per principal; a token alone has no feed
            logger.warning(f"Stacks transfers need an account; token-only filter for {token} is empty")
            return []
        raise ValueError("An account or a token address is required")

    def _fetch_account_transfers(self, log_filter: LogFilter) -> List[LogEvent]:
        logs: List[LogEvent] = []
        path = f"/extended/v1/address/{log_filter.account}/transactions_with_transfers"

        for page in range(MAX_PAGES):
            data = self._api(path, {"limit": PAGE_SIZE, "offset": page * PAGE_SIZE}) or {}
            results = data.get("results") or []
            reached_start = False

            for entry in results:
                tx = entry.get("tx") or {}
                height = tx.get("block_height")
                if height is None:
                    continue
                if log_filter.to_block is not None and height > log_filter.to_block:
                    continue
                if log_filter.from_block is not None and height < log_filter.from_block:
                    # Results are newest first
                    reached_start = True
                    break
                logs.extend(self._transfers_to_logs(entry, tx, log_filter))

            total = data.get("total", 0)
            if reached_start or not results or (page + 1) * PAGE_SIZE >= total:
                break

        return logs

    def _transfers_to_logs(
        self, entry: Dict[str, Any], tx: Dict[str, Any], log_filter: LogFilter
    ) -> List[LogEvent]:
        transfers = [
            (t.get("sender"), t.get("recipient"), t.get("amount"), t.get("asset_identifier", ""))
            for t in entry.get("ft_transfers") or []
        ]
        if not log_filter.address:
            transfers += [
                (t.get("sender"), t.get("recipient"), t.get("amount"), STX_ADDRESS)
                for t in entry.get("stx_transfers") or []
            ]

        logs = []
        for position, (sender, recipient, amount, asset_id) in enumerate(transfers):
            party = sender if log_filter.direction == "from" else recipient
            if party != log_filter.account:
                continue
            contract = asset_contract(asset_id)
            if log_filter.address and contract != log_filter.address:
                continue
            logs.append(
                LogEvent(
                    address=contract,
                    block_number=tx["block_height"],
                    tx_hash=tx.get("tx_id", ""),
                    tx_index=tx.get("tx_index", 0),
                    log_index=position,
                    name="Transfer",
                    args=[sender, recipient, str(amount), asset_id],
                    timestamp=tx.get("block_time"),
                )
            )
        return logs

    async def get_logs(self, log_filter: LogFilter) -> List[LogEvent]:
        if not log_filter.account:
            return []
        return await asyncio.to_thread(self._fetch_account_transfers, log_filter)

    def decode_transfer(self, log: LogEvent) -> Optional[Transaction]:
        if log.name != "Transfer" or len(log.args) < 3:
            return None
        return Transaction(
            tx_hash=log.tx_hash,
            block_number=log.block_number,
            tx_index=log.tx_index,
            log_index=log.log_index,
            from_address=log.args[0],
            to_address=log.args[1],
            value=str(log.args[2]),
            token=Token(address=log.address),
            timestamp=log.timestamp,
        )

    # ==================== TOKENS & BLOCKS ====================

    def _fetch_token_details(self, token_address: str) -> Token:
        if token_address == STX_ADDRESS:
            return STX_TOKEN
        if not is_contract_principal(token_address):
            raise TokenResolutionError(f"Invalid contract address: {token_address}")

        token = self._api(f"/metadata/v1/ft/{token_address}")
        if not token or not token.get("name") or not token.get("symbol") or token.get("decimals") is None:
            raise TokenResolutionError(f"Token details not found for contract address: {token_address}")

        return Token(
            address=token_address,
            name=token["name"],
            symbol=token["symbol"],
            decimals=int(token["decimals"]),
        )

    def _fetch_block_timestamp(self, block_number: int) -> int:
        block = self._api(f"/extended/v2/blocks/{block_number}")
        if not block:
            raise UpstreamError(f"Block not found: {block_number}")
        return int(block["block_time"])

    async def get_tx_batch(self, block_number: int) -> Optional[Dict[str, Any]]:
        """Transaction ids of one block and its timestamp, or None for an unknown block"""
        data = await asyncio.to_thread(self._api, f"/extended/v2/blocks/{block_number}/transactions")
        results = (data or {}).get("results")
        if not results:
            return None
        return {
            "txs": [tx.get("tx_id") for tx in results],
            "timestamp": results[0].get("block_time"),
        }

    # ==================== RECEIPTS ====================

    async def get_tx_receipt(self, chain: str, tx_id: str) -> Optional[TxReceipt]:
        key = CacheKey(CacheKind.TX_RECEIPT, chain, extra=(tx_id,))
        cached = self.cache.get(key)
        if cached:
            return TxReceipt(**cached)

        tx = await asyncio.to_thread(self._api, f"/extended/v1/tx/{tx_id}")
        receipt = self._tx_to_receipt(tx_id, tx)
        if receipt is not None:
            self.cache.set(key, asdict(receipt))
        return receipt

    def _tx_to_receipt(self, tx_id: str, tx: Optional[Dict[str, Any]]) -> Optional[TxReceipt]:
        # Unconfirmed and dropped transactions read as "not found"
        if not tx or not tx.get("tx_id") or tx.get("tx_status") in UNCONFIRMED_STATUSES:
            logger.info(f"Transaction not found: {tx_id}")
            return None

        status = tx.get("tx_status")
        if status not in CONFIRMED_STATUSES:
            logger.error(f"Unknown tx_status: {status}")
            return None

        if not isinstance(tx.get("block_height"), int):
            logger.error(f"Confirmed transaction missing block_height: {tx_id}")
            return None
        if tx.get("event_count") == 0:
            return None

        events = tx.get("events") or []
        ft_event = next((e for e in events if e.get("event_type") == "fungible_token_asset"), None)
        if ft_event is None:
            logger.error(f"Transaction does not have a token: {tx_id}")
            return None

        mapped = [summary for summary in map(event_to_log_event, events) if summary is not None]
        return TxReceipt(
            chain_id=self.chain_config.id,
            hash=tx["tx_id"],
            block_number=tx["block_height"],
            timestamp=tx.get("block_time"),
            contract_address=asset_contract(ft_event["asset"]["asset_id"]),
            events=mapped,
        )
