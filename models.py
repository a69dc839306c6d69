"""
Data models for the transaction explorer
Canonical, namespace-agnostic shapes shared by providers, ingestion and annotations
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional


UNKNOWN_TOKEN_NAME = "Unknown Token"
UNKNOWN_TOKEN_SYMBOL = "???"
DEFAULT_DECIMALS = 18
NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"


# ==================== CHAIN DATA ====================


@dataclass
class Token:
    """Token metadata, resolved lazily"""

    address: str
    name: Optional[str] = None
    symbol: Optional[str] = None
    decimals: Optional[int] = None

    @classmethod
    def unknown(cls, address: str) -> "Token":
        return cls(
            address=address,
            name=UNKNOWN_TOKEN_NAME,
            symbol=UNKNOWN_TOKEN_SYMBOL,
            decimals=DEFAULT_DECIMALS,
        )

    @property
    def is_resolved(self) -> bool:
        return self.name is not None and self.symbol is not None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Token":
        decimals = data.get("decimals")
        return cls(
            address=data.get("address", ""),
            name=data.get("name"),
            symbol=data.get("symbol"),
            decimals=int(decimals) if decimals is not None else None,
        )


@dataclass
class Transaction:
    """A token transfer, ordered within a chain by (block, tx index, log index)"""

    tx_hash: str
    block_number: int
    from_address: str
    to_address: str
    value: str
    token: Token
    timestamp: Optional[int] = None
    tx_index: int = 0
    log_index: Optional[int] = None

    @property
    def dedup_key(self) -> tuple:
        return (self.tx_hash.lower(), self.log_index)

    @property
    def sort_key(self) -> tuple:
        return (
            self.block_number,
            self.tx_index,
            self.log_index if self.log_index is not None else -1,
        )

    def amount(self) -> float:
        """Value converted with the token decimals, for display only"""
        decimals = self.token.decimals if self.token.decimals is not None else DEFAULT_DECIMALS
        return int(self.value) / (10 ** decimals)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "txIndex": self.tx_index,
            "logIndex": self.log_index,
            "timestamp": self.timestamp,
            "from": self.from_address,
            "to": self.to_address,
            "value": self.value,
            "token": self.token.to_dict(),
        }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        log_index = data.get("logIndex")
        timestamp = data.get("timestamp")
        return cls(
            tx_hash=data["txHash"],
            block_number=int(data["blockNumber"]),
            tx_index=int(data.get("txIndex") or 0),
            log_index=int(log_index) if log_index is not None else None,
            timestamp=int(timestamp) if timestamp is not None else None,
            from_address=data.get("from", ""),
            to_address=data.get("to", ""),
            value=str(data.get("value", "0")),
            token=Token.from_dict(data.get("token") or {}),
        )


@dataclass
class LogFilter:
    """
    Event filter for one leg of a transfer query

    EIP155 providers use topics/address; Stacks providers use
    account/direction/address (token principal).
    """

    from_block: Optional[int] = None
    to_block: Optional[int] = None
    topics: List[Optional[str]] = field(default_factory=list)
    address: Optional[str] = None
    account: Optional[str] = None
    direction: Optional[str] = None  # "from" | "to"

    def with_range(self, from_block: int, to_block: int) -> "LogFilter":
        return LogFilter(
            from_block=from_block,
            to_block=to_block,
            topics=list(self.topics),
            address=self.address,
            account=self.account,
            direction=self.direction,
        )

    def to_rpc(self) -> Dict[str, Any]:
        """JSON-RPC filter object (eth_getLogs / eth_subscribe)"""
        params: Dict[str, Any] = {"topics": list(self.topics)}
        if self.from_block is not None:
            params["fromBlock"] = hex(self.from_block)
        if self.to_block is not None:
            params["toBlock"] = hex(self.to_block)
        if self.address:
            params["address"] = self.address
        return params


@dataclass
class LogEvent:
    """A raw matched event, plus its decoded name/args when known"""

    address: str
    block_number: int = 0
    tx_hash: str = ""
    tx_index: int = 0
    log_index: int = 0
    topics: List[str] = field(default_factory=list)
    data: str = "0x"
    name: Optional[str] = None
    args: List[Any] = field(default_factory=list)
    timestamp: Optional[int] = None

    @classmethod
    def from_rpc(cls, log: Dict[str, Any]) -> "LogEvent":
        return cls(
            address=(log.get("address") or "").lower(),
            block_number=_to_int(log.get("blockNumber")),
            tx_hash=log.get("transactionHash") or "",
            tx_index=_to_int(log.get("transactionIndex")),
            log_index=_to_int(log.get("logIndex")),
            topics=list(log.get("topics") or []),
            data=log.get("data") or "0x",
        )

    def summary(self) -> Dict[str, Any]:
        return {"name": self.name, "args": list(self.args), "address": self.address}


@dataclass
class TxReceipt:
    """Decoded events of a confirmed transaction"""

    chain_id: int
    hash: str
    block_number: int
    timestamp: Optional[int]
    contract_address: Optional[str]
    events: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chainId": self.chain_id,
            "hash": self.hash,
            "blockNumber": self.block_number,
            "timestamp": self.timestamp,
            "contract_address": self.contract_address,
            "events": self.events,
        }


# ==================== ANNOTATIONS ====================


IDENTITY_TAGS = ("I", "i")


@dataclass
class Note:
    """A signed annotation event linked to one URI by its identity tag"""

    id: str
    pubkey: str
    created_at: int
    kind: int
    content: str
    tags: List[List[str]] = field(default_factory=list)
    sig: Optional[str] = None

    @property
    def uri(self) -> Optional[str]:
        for tag in self.tags:
            if len(tag) > 1 and tag[0] in IDENTITY_TAGS:
                return tag[1].lower()
        return None

    def tag_values(self, name: str) -> List[str]:
        return [tag[1] for tag in self.tags if len(tag) > 1 and tag[0] == name]

    def to_event(self) -> Dict[str, Any]:
        event = {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "content": self.content,
            "tags": [list(tag) for tag in self.tags],
        }
        if self.sig:
            event["sig"] = self.sig
        return event

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> "Note":
        return cls(
            id=event["id"],
            pubkey=event.get("pubkey", ""),
            created_at=int(event.get("created_at", 0)),
            kind=int(event.get("kind", 0)),
            content=event.get("content", ""),
            tags=[list(tag) for tag in event.get("tags", [])],
            sig=event.get("sig"),
        )


@dataclass
class Profile:
    """Author display profile (kind-0 content)"""

    pubkey: str
    name: Optional[str] = None
    about: Optional[str] = None
    picture: Optional[str] = None
    website: Optional[str] = None
    created_at: int = 0

    def to_content(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "about": self.about,
            "picture": self.picture,
            "website": self.website,
        }


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16) if str(value).startswith("0x") else int(value)
