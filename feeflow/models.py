from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from feeflow.chains import normalize_address, normalize_hex


@dataclass(frozen=True)
class ReceivedAsset:
    vault: str
    underlying_asset: str
    shares: str
    underlying_amount: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vault": self.vault,
            "underlying_asset": self.underlying_asset,
            "shares": self.shares,
            "underlying_amount": self.underlying_amount,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReceivedAsset":
        return cls(
            vault=normalize_address(data.get("vault")),
            underlying_asset=normalize_address(data.get("underlying_asset")),
            shares=str(data.get("shares") or "0"),
            underlying_amount=str(data.get("underlying_amount") or "0"),
        )


@dataclass(frozen=True)
class Auction:
    chain_id: str
    tx_hash: str
    block_number: int
    timestamp: int
    payment_amount: str
    payment_decimals: int = 18
    assets: List[ReceivedAsset] = field(default_factory=list)

    @property
    def auction_id(self) -> str:
        return f"{self.chain_id}:{self.tx_hash}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "timestamp": self.timestamp,
            "payment_amount": self.payment_amount,
            "payment_decimals": self.payment_decimals,
            "assets": [a.to_dict() for a in self.assets],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], chain_id: Optional[str] = None) -> "Auction":
        return cls(
            chain_id=str(data.get("chain_id") or chain_id or ""),
            tx_hash=normalize_hex(data.get("tx_hash")),
            block_number=int(data.get("block_number") or 0),
            timestamp=int(data.get("timestamp") or 0),
            payment_amount=str(data.get("payment_amount") or "0"),
            payment_decimals=int(data.get("payment_decimals", 18)),
            assets=[ReceivedAsset.from_dict(a) for a in data.get("assets") or []],
        )


@dataclass
class ChainAuctions:
    chain_id: str
    addresses: Dict[str, str] = field(default_factory=dict)
    auctions: List[Auction] = field(default_factory=list)

    @property
    def total_payment(self) -> int:
        return sum(int(a.payment_amount) for a in self.auctions)

    @property
    def last_block(self) -> int:
        return max((a.block_number for a in self.auctions), default=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": {
                "total_auctions": len(self.auctions),
                "total_payment": str(self.total_payment),
            },
            "addresses": dict(self.addresses),
            "auctions": [a.to_dict() for a in self.auctions],
        }

    @classmethod
    def from_dict(cls, chain_id: str, data: Dict[str, Any]) -> "ChainAuctions":
        return cls(
            chain_id=str(chain_id),
            addresses={k: str(v) for k, v in (data.get("addresses") or {}).items()},
            auctions=[Auction.from_dict(a, chain_id=str(chain_id)) for a in data.get("auctions") or []],
        )


@dataclass
class AuctionSnapshot:
    chains: Dict[str, ChainAuctions] = field(default_factory=dict)

    def all_auctions(self) -> Iterable[Auction]:
        for chain in self.chains.values():
            yield from chain.auctions

    def global_summary(self) -> Dict[str, Any]:
        return {
            "total_chains": len(self.chains),
            "total_auctions": sum(len(c.auctions) for c in self.chains.values()),
            "total_payment": str(sum(c.total_payment for c in self.chains.values())),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "global": self.global_summary(),
            "chains": {cid: chain.to_dict() for cid, chain in self.chains.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuctionSnapshot":
        chains = data.get("chains") or {}
        if not isinstance(chains, dict):
            raise ValueError("auction snapshot: 'chains' must be an object")
        return cls(chains={str(cid): ChainAuctions.from_dict(str(cid), c) for cid, c in chains.items()})


# Provenance of an asset's price series. Exactly one variant per record.


@dataclass
class ExternalSource:
    identifier: str
    auto_detected: bool = False
    last_refetch: Optional[Dict[str, Any]] = None
    kind: str = field(default="external", init=False)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind, "identifier": self.identifier}
        if self.auto_detected:
            out["auto_detected"] = True
        if self.last_refetch:
            out["last_refetch"] = dict(self.last_refetch)
        return out


MANUAL_METHODS = ("fixed", "linear", "growth", "individual")

SECONDS_PER_DAY = 86400


@dataclass
class ManualSource:
    """Operator-supplied prices.

    ``fixed``: ``{"price"}``. ``linear``: ``{"start_ts", "start_price", "end_ts",
    "end_price"}``, interpolated by time and clamped at both ends. ``growth``:
    ``{"start_ts", "start_price", "rate", "period_days"}``, compounded per
    period. ``individual`` prices were typed in one by one and cannot be
    replayed for new timestamps.
    """

    method: str
    params: Dict[str, Any] = field(default_factory=dict)
    kind: str = field(default="manual", init=False)

    @property
    def replayable(self) -> bool:
        return self.method in ("fixed", "linear", "growth")

    def price_at(self, timestamp: int) -> Optional[float]:
        p = self.params
        if self.method == "fixed":
            return float(p["price"])
        if self.method == "linear":
            start_ts, end_ts = int(p["start_ts"]), int(p["end_ts"])
            start_price, end_price = float(p["start_price"]), float(p["end_price"])
            if end_ts <= start_ts or timestamp <= start_ts:
                return start_price
            if timestamp >= end_ts:
                return end_price
            ratio = (timestamp - start_ts) / (end_ts - start_ts)
            return start_price + (end_price - start_price) * ratio
        if self.method == "growth":
            period_s = float(p.get("period_days", 1)) * SECONDS_PER_DAY
            periods = (timestamp - int(p["start_ts"])) / period_s
            return float(p["start_price"]) * (1 + float(p["rate"])) ** periods
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "method": self.method, "params": dict(self.params)}


@dataclass
class CrossChainAlias:
    base_asset: str
    kind: str = field(default="alias", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "base_asset": self.base_asset}


@dataclass
class VaultDerived:
    underlying_asset: str
    method: str = "convertToAssets"
    kind: str = field(default="vault", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "underlying_asset": self.underlying_asset, "method": self.method}


Provenance = Union[ExternalSource, ManualSource, CrossChainAlias, VaultDerived]


def provenance_from_dict(data: Any) -> Optional[Provenance]:
    if not isinstance(data, dict):
        return None
    kind = data.get("kind")
    if kind == "external" and data.get("identifier"):
        return ExternalSource(
            identifier=str(data["identifier"]),
            auto_detected=bool(data.get("auto_detected", False)),
            last_refetch=data.get("last_refetch"),
        )
    if kind == "manual" and data.get("method"):
        return ManualSource(method=str(data["method"]), params=dict(data.get("params") or {}))
    if kind == "alias" and data.get("base_asset"):
        return CrossChainAlias(base_asset=str(data["base_asset"]))
    if kind == "vault" and data.get("underlying_asset"):
        return VaultDerived(
            underlying_asset=str(data["underlying_asset"]),
            method=str(data.get("method") or "convertToAssets"),
        )
    return None


@dataclass
class AssetPriceRecord:
    chain_id: str
    address: str
    symbol: str = ""
    decimals: Optional[int] = None
    prices: Dict[int, float] = field(default_factory=dict)
    provenance: Optional[Provenance] = None

    @property
    def key(self) -> str:
        return f"{self.chain_id}:{self.address}"

    def missing(self, timestamps: Iterable[int]) -> List[int]:
        return sorted(ts for ts in set(timestamps) if ts not in self.prices)

    def covers(self, timestamps: Iterable[int]) -> bool:
        return not self.missing(timestamps)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "chain_id": self.chain_id,
            "address": self.address,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "prices": {str(ts): px for ts, px in sorted(self.prices.items())},
        }
        if self.provenance is not None:
            out["metadata"] = self.provenance.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetPriceRecord":
        prices: Dict[int, float] = {}
        for ts, px in (data.get("prices") or {}).items():
            prices[int(ts)] = px if isinstance(px, (int, float)) else float(px)
        decimals = data.get("decimals")
        return cls(
            chain_id=str(data.get("chain_id") or ""),
            address=normalize_address(data.get("address")),
            symbol=str(data.get("symbol") or ""),
            decimals=int(decimals) if decimals is not None else None,
            prices=prices,
            provenance=provenance_from_dict(data.get("metadata")),
        )


@dataclass(frozen=True)
class Equivalent:
    asset_key: str
    chain_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"asset_key": self.asset_key, "chain_id": self.chain_id}


@dataclass
class AssetMapping:
    base_asset: str
    equivalents: List[Equivalent] = field(default_factory=list)
    discovered_at: str = ""

    def includes(self, key: str) -> bool:
        return any(eq.asset_key == key for eq in self.equivalents)

    def add(self, equivalent: Equivalent) -> bool:
        if equivalent.asset_key == self.base_asset or self.includes(equivalent.asset_key):
            return False
        self.equivalents.append(equivalent)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_asset": self.base_asset,
            "equivalents": [eq.to_dict() for eq in self.equivalents],
            "discovered_at": self.discovered_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetMapping":
        return cls(
            base_asset=str(data.get("base_asset") or ""),
            equivalents=[
                Equivalent(asset_key=str(eq.get("asset_key")), chain_id=str(eq.get("chain_id")))
                for eq in data.get("equivalents") or []
                if isinstance(eq, dict) and eq.get("asset_key")
            ],
            discovered_at=str(data.get("discovered_at") or ""),
        )


def mapping_key(address: str) -> str:
    return f"cross-chain:{normalize_address(address)}"
