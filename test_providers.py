"""
Tests for the blockchain data providers
EIP155 JSON-RPC provider and Stacks Hiro API provider, with mocked HTTP sessions
"""

from typing import Any, Dict
from unittest.mock import Mock

import pytest
import requests
from eth_abi import encode as abi_encode

from chains import ChainConfig
from errors import ConfigurationError, NetworkError
from evm_provider import ERC20_SELECTORS, TRANSFER_TOPIC, EIP155DataProvider, pad_address_topic
from models import LogEvent, Token
from providers import create_provider
from stacks_provider import (
    STX_ADDRESS,
    StacksDataProvider,
    event_to_log_event,
    is_contract_principal,
)

ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
USDC = "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"

STX_ALICE = "SP2C2YFP12AJZB4MABJBAJ55XECVS7E4PMMZ89YZR"
STX_BOB = "SP3FBR2AGK5H9QBDH3EEN6DF8EK8JY7RX8QJ5SVTE"
USDA = "SP2C2YFP12AJZB4MABJBAJ55XECVS7E4PMMZ89YZR.usda-token"


class _MockResponse:
    """Simple mock for HTTP responses"""

    def __init__(self, payload: Any, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


def _hex(types, values) -> str:
    return "0x" + abi_encode(types, values).hex()


def rpc_session(results: Dict[str, Any]) -> Mock:
    """Session whose POSTs answer JSON-RPC methods from results (value or callable(params))"""

    def post(url, json=None, timeout=None):
        result = results[json["method"]]
        if callable(result):
            result = result(json["params"])
        return _MockResponse({"jsonrpc": "2.0", "id": json["id"], "result": result})

    session = Mock()
    session.post.side_effect = post
    return session


def transfer_log(from_address=ALICE, to_address=BOB, value=1000, block=100, log_index=0) -> Dict[str, Any]:
    return {
        "address": USDC,
        "blockNumber": hex(block),
        "transactionHash": "0xabc",
        "transactionIndex": "0x1",
        "logIndex": hex(log_index),
        "topics": [TRANSFER_TOPIC, pad_address_topic(from_address), pad_address_topic(to_address)],
        "data": _hex(["uint256"], [value]),
    }


def erc20_call(params):
    call = params[0]
    if call["data"] == ERC20_SELECTORS["name"]:
        return _hex(["string"], ["USD Coin"])
    if call["data"] == ERC20_SELECTORS["symbol"]:
        return _hex(["string"], ["USDC"])
    return _hex(["uint8"], [6])


@pytest.fixture
def ethereum():
    return ChainConfig.from_dict(
        "ethereum", {"id": 1, "rpc": ["https://rpc1.test", "https://rpc2.test"]}
    )


@pytest.fixture
def stacks():
    return ChainConfig.from_dict(
        "stacks", {"id": 1, "namespace": "stacks", "rpc": ["https://api.hiro.test"]}
    )


class TestProviderFactory:
    def test_selects_variant_by_namespace(self, ethereum, stacks):
        assert isinstance(create_provider(ethereum, session=Mock()), EIP155DataProvider)
        assert isinstance(create_provider(stacks, session=Mock()), StacksDataProvider)

    def test_unsupported_namespace(self):
        bitcoin = ChainConfig.from_dict("bitcoin", {"id": 0, "namespace": "bip122", "rpc": ["https://x"]})
        with pytest.raises(ConfigurationError):
            create_provider(bitcoin, session=Mock())


class TestEIP155Filters:
    def test_account_and_token(self, ethereum):
        provider = EIP155DataProvider(ethereum, session=Mock())
        out_leg, in_leg = provider.transfer_filters(account=ALICE, token=USDC.upper().replace("0X", "0x"))

        assert out_leg.topics == [TRANSFER_TOPIC, pad_address_topic(ALICE)]
        assert in_leg.topics == [TRANSFER_TOPIC, None, pad_address_topic(ALICE)]
        assert out_leg.address == USDC
        assert in_leg.to_rpc()["address"] == USDC

    def test_token_only(self, ethereum):
        provider = EIP155DataProvider(ethereum, session=Mock())
        (token_filter,) = provider.transfer_filters(token=USDC, from_block=10, to_block=20)
        assert token_filter.topics == [TRANSFER_TOPIC]
        assert token_filter.to_rpc()["fromBlock"] == "0xa"

    def test_requires_account_or_token(self, ethereum):
        provider = EIP155DataProvider(ethereum, session=Mock())
        with pytest.raises(ValueError):
            provider.transfer_filters()
        with pytest.raises(ValueError):
            provider.transfer_filters(account="not-an-address")


class TestEIP155Decoding:
    def test_decode_transfer(self, ethereum):
        provider = EIP155DataProvider(ethereum, session=Mock())
        tx = provider.decode_transfer(LogEvent.from_rpc(transfer_log(value=42, log_index=3)))

        assert tx.from_address == ALICE
        assert tx.to_address == BOB
        assert tx.value == "42"
        assert tx.block_number == 100
        assert tx.tx_index == 1
        assert tx.log_index == 3
        assert tx.token.address == USDC

    def test_erc721_transfer_is_ignored(self, ethereum):
        provider = EIP155DataProvider(ethereum, session=Mock())
        raw = transfer_log()
        raw["topics"].append("0x" + "0" * 63 + "7")
        raw["data"] = "0x"
        assert provider.decode_transfer(LogEvent.from_rpc(raw)) is None


class TestEIP155Provider:
    @pytest.mark.asyncio
    async def test_block_number_and_logs(self, ethereum):
        session = rpc_session({"eth_blockNumber": "0x64", "eth_getLogs": [transfer_log()]})
        provider = EIP155DataProvider(ethereum, session=session)

        assert await provider.get_block_number() == 100
        logs = await provider.get_logs(provider.transfer_filters(account=ALICE)[0].with_range(1, 100))
        assert len(logs) == 1
        assert logs[0].tx_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_failover_to_second_endpoint(self, ethereum):
        def post(url, json=None, timeout=None):
            if url == "https://rpc1.test":
                raise requests.exceptions.ConnectionError("down")
            return _MockResponse({"jsonrpc": "2.0", "id": json["id"], "result": "0x10"})

        session = Mock()
        session.post.side_effect = post
        provider = EIP155DataProvider(ethereum, session=session)

        assert await provider.get_block_number() == 16
        assert provider.rotation.current == "https://rpc2.test"

    @pytest.mark.asyncio
    async def test_all_endpoints_down(self, ethereum):
        session = Mock()
        session.post.side_effect = requests.exceptions.ConnectionError("down")
        provider = EIP155DataProvider(ethereum, session=session)

        with pytest.raises(NetworkError):
            await provider.get_block_number()

    @pytest.mark.asyncio
    async def test_error_payload_fails_over(self, ethereum):
        def post(url, json=None, timeout=None):
            if url == "https://rpc1.test":
                return _MockResponse({"jsonrpc": "2.0", "id": json["id"], "error": {"code": -32005, "message": "limit"}})
            return _MockResponse({"jsonrpc": "2.0", "id": json["id"], "result": "0x20"})

        session = Mock()
        session.post.side_effect = post
        provider = EIP155DataProvider(ethereum, session=session)

        assert await provider.get_block_number() == 32
        assert provider.rotation.current == "https://rpc2.test"

    @pytest.mark.asyncio
    async def test_token_details_are_cached(self, ethereum):
        session = rpc_session({"eth_call": erc20_call})
        provider = EIP155DataProvider(ethereum, session=session)

        token = await provider.get_token_details("ethereum", USDC)
        assert token == Token(address=USDC, name="USD Coin", symbol="USDC", decimals=6)

        calls = session.post.call_count
        assert await provider.get_token_details("ethereum", USDC) == token
        assert session.post.call_count == calls

    @pytest.mark.asyncio
    async def test_unresolvable_token_degrades(self, ethereum):
        """A contract answering eth_call with nothing becomes the unknown token"""
        session = rpc_session({"eth_call": "0x"})
        provider = EIP155DataProvider(ethereum, session=session)

        token = await provider.get_token_details("ethereum", USDC)

        assert token.name == "Unknown Token"
        assert token.symbol == "???"
        assert token.decimals == 18

    @pytest.mark.asyncio
    async def test_unknown_token_is_cached(self, ethereum):
        session = rpc_session({"eth_call": "0x"})
        provider = EIP155DataProvider(ethereum, session=session)

        await provider.get_token_details("ethereum", USDC)
        calls = session.post.call_count

        token = await provider.get_token_details("ethereum", USDC)

        assert token.name == "Unknown Token"
        assert session.post.call_count == calls

    @pytest.mark.asyncio
    async def test_log_to_transaction(self, ethereum):
        session = rpc_session({
            "eth_call": erc20_call,
            "eth_getBlockByNumber": {"timestamp": hex(1700000000)},
        })
        provider = EIP155DataProvider(ethereum, session=session)

        tx = await provider.log_to_transaction("ethereum", LogEvent.from_rpc(transfer_log()))

        assert tx.token.symbol == "USDC"
        assert tx.timestamp == 1700000000
        assert tx.amount() == 1000 / 10 ** 6

    @pytest.mark.asyncio
    async def test_block_range(self, ethereum):
        def get_logs(params):
            # Only the outgoing leg ([T, pad(a)]) matches
            return [transfer_log(block=120), transfer_log(block=110, log_index=1)] if len(params[0]["topics"]) == 2 else []

        session = rpc_session({
            "eth_getLogs": get_logs,
            "eth_call": erc20_call,
            "eth_getBlockByNumber": {"timestamp": hex(1700000000)},
        })
        provider = EIP155DataProvider(ethereum, session=session)

        transactions = await provider.get_block_range("ethereum", ALICE, 100, 200)

        assert [tx.block_number for tx in transactions] == [120, 110]
        assert all(tx.token.symbol == "USDC" for tx in transactions)

    @pytest.mark.asyncio
    async def test_address_type(self, ethereum):
        token_code = "0x6080" + "a9059cbb" + "70a08231" + "18160ddd"
        session = rpc_session({
            "eth_getCode": lambda params: "0x" if params[0] == ALICE else token_code,
        })
        provider = EIP155DataProvider(ethereum, session=session)

        assert await provider.get_address_type(ALICE) == "eoa"
        assert await provider.get_address_type(USDC) == "token"

    @pytest.mark.asyncio
    async def test_tx_receipt(self, ethereum):
        session = rpc_session({
            "eth_getTransactionByHash": {"hash": "0xabc", "to": "0xPROXY", "chainId": "0x1"},
            "eth_getTransactionReceipt": {"blockNumber": "0x64", "logs": [transfer_log(value=5)]},
            "eth_getBlockByNumber": {"timestamp": hex(1700000000)},
        })
        provider = EIP155DataProvider(ethereum, session=session)

        receipt = await provider.get_tx_receipt("ethereum", "0xabc")

        assert receipt.chain_id == 1
        assert receipt.block_number == 100
        assert receipt.contract_address == USDC
        assert receipt.events == [{"name": "Transfer", "args": [ALICE, BOB, "5"], "address": USDC}]

    @pytest.mark.asyncio
    async def test_contract_creation_has_no_receipt(self, ethereum):
        session = rpc_session({"eth_getTransactionByHash": {"hash": "0xabc", "to": None}})
        provider = EIP155DataProvider(ethereum, session=session)
        assert await provider.get_tx_receipt("ethereum", "0xabc") is None


def hiro_session(routes: Dict[str, Any]) -> Mock:
    """Session whose GETs answer by URL path; missing paths are 404"""

    def get(url, params=None, timeout=None):
        path = url.replace("https://api.hiro.test", "")
        if path not in routes:
            return _MockResponse({"error": "not found"}, status_code=404)
        return _MockResponse(routes[path])

    session = Mock()
    session.get.side_effect = get
    return session


def stacks_tx(status="success", events=None, **overrides):
    tx = {
        "tx_id": "0xstx",
        "tx_status": status,
        "block_height": 150000,
        "block_time": 1700000000,
        "event_count": len(events or []),
        "events": events or [],
    }
    tx.update(overrides)
    return tx


FT_EVENT = {
    "event_type": "fungible_token_asset",
    "asset": {
        "asset_event_type": "transfer",
        "asset_id": f"{USDA}::usda",
        "sender": STX_ALICE,
        "recipient": STX_BOB,
        "amount": "500",
    },
}


class TestStacksEvents:
    def test_fungible_transfer(self):
        assert event_to_log_event(FT_EVENT) == {
            "name": "Transfer",
            "args": [STX_ALICE, STX_BOB, "500", f"{USDA}::usda"],
            "address": USDA,
        }

    def test_stx_transfer(self):
        event = {
            "event_type": "stx_asset",
            "asset": {"asset_event_type": "transfer", "sender": STX_ALICE, "recipient": STX_BOB, "amount": 7},
        }
        assert event_to_log_event(event)["address"] == STX_ADDRESS
        assert event_to_log_event(event)["args"][2] == "7"

    def test_contract_log(self):
        event = {
            "event_type": "smart_contract_log",
            "contract_log": {"topic": "print", "contract_id": USDA, "value": {"repr": "u1"}},
        }
        assert event_to_log_event(event) == {"name": "print", "args": ["u1"], "address": USDA}

    def test_unknown_event_type(self):
        assert event_to_log_event({"event_type": "stx_lock"}) is None

    def test_contract_principal(self):
        assert is_contract_principal(USDA)
        assert not is_contract_principal(STX_ALICE)
        assert not is_contract_principal("0x1234.token")


class TestStacksReceipts:
    def test_confirmed_with_token(self, stacks):
        provider = StacksDataProvider(stacks, session=Mock())
        receipt = provider._tx_to_receipt("0xstx", stacks_tx(events=[FT_EVENT]))
        assert receipt.block_number == 150000
        assert receipt.contract_address == USDA
        assert receipt.events[0]["name"] == "Transfer"

    @pytest.mark.parametrize("status", ["pending", "dropped_replace_by_fee", "dropped_stale_garbage_collect"])
    def test_unconfirmed_is_not_found(self, stacks, status):
        provider = StacksDataProvider(stacks, session=Mock())
        assert provider._tx_to_receipt("0xstx", stacks_tx(status=status, events=[FT_EVENT])) is None

    def test_unknown_status(self, stacks):
        provider = StacksDataProvider(stacks, session=Mock())
        assert provider._tx_to_receipt("0xstx", stacks_tx(status="weird", events=[FT_EVENT])) is None

    def test_abort_is_confirmed(self, stacks):
        provider = StacksDataProvider(stacks, session=Mock())
        tx = stacks_tx(status="abort_by_post_condition", events=[FT_EVENT])
        assert provider._tx_to_receipt("0xstx", tx) is not None

    def test_missing_block_height(self, stacks):
        provider = StacksDataProvider(stacks, session=Mock())
        assert provider._tx_to_receipt("0xstx", stacks_tx(events=[FT_EVENT], block_height=None)) is None

    def test_no_events(self, stacks):
        provider = StacksDataProvider(stacks, session=Mock())
        assert provider._tx_to_receipt("0xstx", stacks_tx(events=[])) is None

    def test_no_token_event(self, stacks):
        provider = StacksDataProvider(stacks, session=Mock())
        event = {"event_type": "stx_asset", "asset": {"asset_event_type": "transfer", "amount": 1}}
        assert provider._tx_to_receipt("0xstx", stacks_tx(events=[event])) is None

    @pytest.mark.asyncio
    async def test_get_tx_receipt_not_found(self, stacks):
        provider = StacksDataProvider(stacks, session=hiro_session({}))
        assert await provider.get_tx_receipt("stacks", "0xmissing") is None


class TestStacksProvider:
    def test_token_only_filter_is_empty(self, stacks):
        provider = StacksDataProvider(stacks, session=Mock())
        assert provider.transfer_filters(token=USDA) == []

    @pytest.mark.asyncio
    async def test_block_number(self, stacks):
        provider = StacksDataProvider(stacks, session=hiro_session({
            "/extended/v2/blocks": {"results": [{"height": 150123}]},
        }))
        assert await provider.get_block_number() == 150123

    @pytest.mark.asyncio
    async def test_account_transfers(self, stacks):
        path = f"/extended/v1/address/{STX_ALICE}/transactions_with_transfers"
        provider = StacksDataProvider(stacks, session=hiro_session({
            path: {
                "total": 3,
                "results": [
                    {
                        "tx": {"tx_id": "0x3", "block_height": 120, "tx_index": 2, "block_time": 1700000300},
                        "ft_transfers": [
                            {"sender": STX_ALICE, "recipient": STX_BOB, "amount": "5", "asset_identifier": f"{USDA}::usda"}
                        ],
                        "stx_transfers": [{"sender": STX_ALICE, "recipient": STX_BOB, "amount": "100"}],
                    },
                    {
                        "tx": {"tx_id": "0x2", "block_height": 110, "tx_index": 0, "block_time": 1700000200},
                        "ft_transfers": [
                            {"sender": STX_BOB, "recipient": STX_ALICE, "amount": "9", "asset_identifier": f"{USDA}::usda"}
                        ],
                    },
                    {
                        "tx": {"tx_id": "0x1", "block_height": 90, "tx_index": 0, "block_time": 1700000100},
                        "stx_transfers": [{"sender": STX_ALICE, "recipient": STX_BOB, "amount": "1"}],
                    },
                ],
            },
        }))
        out_leg, in_leg = provider.transfer_filters(account=STX_ALICE)

        sent = await provider.get_logs(out_leg.with_range(100, 200))
        received = await provider.get_logs(in_leg.with_range(100, 200))

        assert [(log.tx_hash, log.address) for log in sent] == [("0x3", USDA), ("0x3", STX_ADDRESS)]
        assert [log.log_index for log in sent] == [0, 1]
        assert [log.tx_hash for log in received] == ["0x2"]

        tx = provider.decode_transfer(received[0])
        assert tx.from_address == STX_BOB
        assert tx.value == "9"
        assert tx.timestamp == 1700000200

    @pytest.mark.asyncio
    async def test_tx_batch(self, stacks):
        provider = StacksDataProvider(stacks, session=hiro_session({
            "/extended/v2/blocks/150000/transactions": {
                "results": [{"tx_id": "0x1", "block_time": 1700000000}, {"tx_id": "0x2", "block_time": 1700000000}],
            },
        }))

        assert await provider.get_tx_batch(150000) == {"txs": ["0x1", "0x2"], "timestamp": 1700000000}
        assert await provider.get_tx_batch(1) is None

    @pytest.mark.asyncio
    async def test_token_details(self, stacks):
        provider = StacksDataProvider(stacks, session=hiro_session({
            f"/metadata/v1/ft/{USDA}": {"name": "USDA", "symbol": "USDA", "decimals": 6},
        }))

        assert (await provider.get_token_details("stacks", STX_ADDRESS)).symbol == "STX"
        assert (await provider.get_token_details("stacks", USDA)).decimals == 6
        unknown = await provider.get_token_details("stacks", "not-a-principal")
        assert unknown.name == "Unknown Token"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
