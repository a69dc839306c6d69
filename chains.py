"""
Chain endpoint registry
Static lookup: chain slug -> RPC/WebSocket endpoints, explorer API, chain id, namespace
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import ConfigurationError
from uri import Namespace, build_uri

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainConfig:
    """Endpoints and identity of one chain"""

    slug: str
    id: int
    namespace: Namespace
    rpc: List[str]
    ws: List[str] = field(default_factory=list)
    explorer_api: Optional[str] = None
    explorer_url: Optional[str] = None
    native_token: Optional[Dict[str, Any]] = None

    @property
    def supports_streaming(self) -> bool:
        return bool(self.ws)

    def address_uri(self, address: str) -> str:
        return build_uri(self.namespace, self.id, address=address)

    def tx_uri(self, tx_hash: str) -> str:
        return build_uri(self.namespace, self.id, tx_id=tx_hash)

    @classmethod
    def from_dict(cls, slug: str, data: Dict[str, Any]) -> "ChainConfig":
        rpc = data.get("rpc") or []
        if isinstance(rpc, str):
            rpc = [rpc]
        if not rpc:
            raise ConfigurationError(f"No RPC endpoint configured for chain {slug}")

        ws = data.get("ws") or []
        if isinstance(ws, str):
            ws = [ws]

        return cls(
            slug=slug,
            id=int(data["id"]),
            namespace=Namespace.from_value(data.get("namespace", "eip155")),
            rpc=list(rpc),
            ws=list(ws),
            explorer_api=data.get("explorer_api"),
            explorer_url=data.get("explorer_url"),
            native_token=data.get("native_token"),
        )


class ChainEndpointRegistry:
    """Lookup of chain configurations by slug or numeric id"""

    def __init__(self, chains: Dict[str, ChainConfig]):
        self._chains = dict(chains)

    @classmethod
    def from_file(cls, path: str) -> "ChainEndpointRegistry":
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Unable to load chain configuration {path}: {e}") from e
        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: Dict[str, Dict[str, Any]]) -> "ChainEndpointRegistry":
        chains = {
            slug.lower(): ChainConfig.from_dict(slug.lower(), data)
            for slug, data in raw.items()
        }
        logger.info(f"Loaded {len(chains)} chain configurations")
        return cls(chains)

    def get(self, chain: str) -> ChainConfig:
        """Chain config by slug; raises ConfigurationError when absent"""
        if not chain:
            raise ConfigurationError("A chain is required")
        chain_config = self._chains.get(chain.lower())
        if chain_config is None:
            raise ConfigurationError(f"Unknown chain: {chain}")
        return chain_config

    def by_chain_id(self, namespace: Namespace, chain_id: int) -> Optional[ChainConfig]:
        for chain_config in self._chains.values():
            if chain_config.namespace is namespace and chain_config.id == chain_id:
                return chain_config
        return None

    def slugs(self) -> List[str]:
        return sorted(self._chains)

    def __contains__(self, chain: str) -> bool:
        return chain.lower() in self._chains
