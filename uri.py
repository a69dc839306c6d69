"""
Annotation URIs
Canonical `<namespace>:<chainId>:<address|tx>:<value>` keys joining chain data to notes
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class Namespace(Enum):
    """Chain families with distinct provider wire semantics"""

    EIP155 = "eip155"
    STACKS = "stacks"
    BIP122 = "bip122"

    @classmethod
    def from_value(cls, value: Union[str, "Namespace"]) -> "Namespace":
        if isinstance(value, Namespace):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"blockchain name space unknown: {value}") from None


class AddressType(Enum):
    ADDRESS = "address"
    TX = "tx"


ChainId = Union[int, str]


@dataclass(frozen=True)
class URIParts:
    """Decomposed annotation URI"""

    namespace: Namespace
    chain_id: ChainId
    address_type: AddressType
    address: Optional[str] = None
    tx_id: Optional[str] = None

    @property
    def value(self) -> str:
        return self.tx_id if self.address_type is AddressType.TX else self.address


def build_uri(
    namespace: Union[str, Namespace],
    chain_id: ChainId,
    address: Optional[str] = None,
    tx_id: Optional[str] = None,
) -> str:
    """Build a lower-cased URI; a tx_id takes precedence over an address"""
    ns = Namespace.from_value(namespace)
    if tx_id:
        uri = f"{ns.value}:{chain_id}:{AddressType.TX.value}:{tx_id}"
    elif address:
        uri = f"{ns.value}:{chain_id}:{AddressType.ADDRESS.value}:{address}"
    else:
        raise ValueError("Either address or tx_id is required to build a URI")
    return uri.lower()


def parse_uri(uri: str) -> URIParts:
    """
    Parse a URI into its parts

    Raises ValueError for malformed URIs and unknown namespaces.
    Numeric chain ids become ints; anything else (e.g. a bip122 genesis
    prefix) is kept as the raw reference string.
    """
    parts = uri.split(":", 3)
    if len(parts) != 4:
        raise ValueError(f"Malformed URI: {uri}")

    raw_namespace, raw_chain_id, raw_type, value = parts
    namespace = Namespace.from_value(raw_namespace)

    try:
        address_type = AddressType(raw_type.lower())
    except ValueError:
        raise ValueError(f"Unknown URI entity type: {raw_type}") from None

    if not value:
        raise ValueError(f"Missing value in URI: {uri}")

    chain_id: ChainId = int(raw_chain_id) if raw_chain_id.isdigit() else raw_chain_id

    if address_type is AddressType.TX:
        return URIParts(namespace, chain_id, address_type, tx_id=value)
    return URIParts(namespace, chain_id, address_type, address=value)


def kind_from_uri(uri: str) -> str:
    """Value of the "k" tag published alongside a note"""
    entity = "tx" if ":tx:" in uri else "address"
    family = "bitcoin" if uri.startswith(("bitcoin", Namespace.BIP122.value)) else "ethereum"
    return f"{family}:{entity}"


def uri_for_address(namespace: Union[str, Namespace], chain_id: ChainId, address: str) -> str:
    return build_uri(namespace, chain_id, address=address)


def uri_for_transaction(namespace: Union[str, Namespace], chain_id: ChainId, tx_hash: str) -> str:
    return build_uri(namespace, chain_id, tx_id=tx_hash)
