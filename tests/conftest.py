"""Shared fakes: no test touches the network."""

from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from feeflow.chain_rpc import RpcError, TRANSFER_TOPIC
from feeflow.models import Auction, AuctionSnapshot, ChainAuctions, ReceivedAsset
from feeflow.price_fetcher import PriceFetcher
from feeflow.snapshots import AssetBook


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class ScriptedSession:
    """Returns queued responses (or raises queued exceptions) in order."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def _next(self, method: str, url: str, kwargs: Dict[str, Any]) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("GET", url, kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._next("POST", url, kwargs)


class LlamaSession:
    """Serves historical prices from ``{identifier: {timestamp: price}}``."""

    def __init__(self, prices: Dict[str, Dict[int, float]], symbols: Optional[Dict[str, str]] = None) -> None:
        self.prices = prices
        self.symbols = symbols or {}
        self.urls: List[str] = []

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        self.urls.append(url)
        tail = url.split("/prices/historical/", 1)[1]
        ts_text, coin = tail.split("/", 1)
        series = self.prices.get(coin, {})
        price = series.get(int(ts_text))
        if price is None:
            return FakeResponse(200, {"coins": {}})
        entry = {"price": price, "decimals": 18, "symbol": self.symbols.get(coin, "TKN"), "timestamp": int(ts_text)}
        return FakeResponse(200, {"coins": {coin: entry}})

    def coins_requested(self) -> List[str]:
        return [u.split("/prices/historical/", 1)[1].split("/", 1)[1] for u in self.urls]


class FakeRpc:
    """In-memory stand-in for ChainRpc."""

    def __init__(self) -> None:
        self.latest = 0
        self.deployed_at = 0
        self.logs: List[Dict[str, Any]] = []
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.timestamps: Dict[int, int] = {}
        self.vault_assets: Dict[str, str] = {}
        # vault -> shares, block -> underlying amount
        self.rates: Dict[str, Callable[[int, Any], int]] = {}
        self.symbols: Dict[str, str] = {}
        self.decimals: Dict[str, int] = {}
        self.get_logs_hook: Optional[Callable[[int, int], Optional[Exception]]] = None
        self.calls: List[Tuple[Any, ...]] = []

    def block_number(self) -> int:
        self.calls.append(("block_number",))
        return self.latest

    def get_code(self, address: str, block: Any = "latest") -> str:
        self.calls.append(("get_code", block))
        return "0x6080" if block >= self.deployed_at else "0x"

    def get_logs(self, *, address: str, topics: Any, from_block: int, to_block: int, timeout_s: Any = None) -> List:
        self.calls.append(("get_logs", from_block, to_block))
        if self.get_logs_hook is not None:
            exc = self.get_logs_hook(from_block, to_block)
            if exc is not None:
                raise exc
        return [
            log for log in self.logs if from_block <= int(log["blockNumber"], 16) <= to_block
        ]

    def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        self.calls.append(("get_receipt", tx_hash))
        return self.receipts.get(tx_hash)

    def get_block_timestamp(self, block: int) -> int:
        self.calls.append(("get_block_timestamp", block))
        if block not in self.timestamps:
            raise RpcError(f"block {block} not found")
        return self.timestamps[block]

    def convert_to_assets(self, vault: str, shares: int, block: Any = "latest", *, timeout_s: Any = None) -> int:
        self.calls.append(("convert_to_assets", vault, shares, block))
        rate = self.rates.get(vault)
        if rate is None:
            raise RpcError(f"eth_call to {vault} returned no data")
        return rate(shares, block)

    def vault_asset(self, vault: str, block: Any = "latest", *, timeout_s: Any = None) -> str:
        self.calls.append(("vault_asset", vault, block))
        if vault not in self.vault_assets:
            raise RpcError(f"eth_call to {vault} returned no data")
        return self.vault_assets[vault]

    def erc20_symbol(self, token: str, *, timeout_s: Any = None) -> str:
        self.calls.append(("erc20_symbol", token))
        if token not in self.symbols:
            raise RpcError(f"eth_call to {token} returned no data")
        return self.symbols[token]

    def erc20_decimals(self, token: str, *, timeout_s: Any = None) -> int:
        self.calls.append(("erc20_decimals", token))
        if token not in self.decimals:
            raise RpcError(f"eth_call to {token} returned no data")
        return self.decimals[token]


def addr(n: int) -> str:
    return "0x" + f"{n:040x}"


def topic(address: str) -> str:
    return "0x" + address[2:].rjust(64, "0")


def word(value: int) -> str:
    return f"{value:064x}"


def transfer_log(token: str, src: str, dst: str, value: int) -> Dict[str, Any]:
    return {"address": token, "topics": [TRANSFER_TOPIC, topic(src), topic(dst)], "data": "0x" + word(value)}


def make_auction(
    chain_id: str,
    tx: int,
    block: int,
    timestamp: int,
    payment: int = 10**18,
    assets: Optional[List[Tuple[str, str]]] = None,
) -> Auction:
    received = [
        ReceivedAsset(vault=addr(9000 + i), underlying_asset=underlying, shares=amount, underlying_amount=amount)
        for i, (underlying, amount) in enumerate(assets or [])
    ]
    return Auction(
        chain_id=chain_id,
        tx_hash="0x" + f"{tx:064x}",
        block_number=block,
        timestamp=timestamp,
        payment_amount=str(payment),
        payment_decimals=18,
        assets=received,
    )


def make_snapshot(*auctions: Auction) -> AuctionSnapshot:
    snapshot = AuctionSnapshot()
    for auction in auctions:
        chain = snapshot.chains.setdefault(auction.chain_id, ChainAuctions(chain_id=auction.chain_id))
        chain.auctions.append(auction)
    return snapshot


@pytest.fixture
def no_sleep() -> List[float]:
    return []


@pytest.fixture
def book(tmp_path) -> AssetBook:
    return AssetBook.load(
        str(tmp_path / "asset-prices.json"),
        str(tmp_path / "asset-mappings.json"),
        str(tmp_path / "failed-assets.json"),
    )


@pytest.fixture
def llama_fetcher_factory(no_sleep):
    def build(prices: Dict[str, Dict[int, float]], symbols: Optional[Dict[str, str]] = None):
        session = LlamaSession(prices, symbols)
        fetcher = PriceFetcher(session, base_url="https://coins.test", sleep=no_sleep.append)
        return fetcher, session

    return build
