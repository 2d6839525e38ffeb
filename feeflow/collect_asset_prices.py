import argparse
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

import requests

from feeflow.chain_rpc import ChainRpc, RpcError, is_zero_address
from feeflow.chains import (
    asset_key,
    configure_logging,
    data_path,
    discover_rpc_urls,
    is_native_asset,
    load_env,
    normalize_address,
    split_asset_key,
)
from feeflow.models import (
    AssetMapping,
    AssetPriceRecord,
    AuctionSnapshot,
    CrossChainAlias,
    Equivalent,
    ExternalSource,
    ManualSource,
    Provenance,
    VaultDerived,
    mapping_key,
)
from feeflow.price_fetcher import PriceFetcher, PricePoint, PriceUnavailable
from feeflow.snapshots import AssetBook, AuctionStore

logger = logging.getLogger(__name__)

REFERENCE_ASSET = "1:0xd9fcd98c322942075a5c3860693e9f4f03aae07b"
REFERENCE_SYMBOL = "EUL"
REFERENCE_DECIMALS = 18
REFERENCE_FALLBACK_ID = "coingecko:euler"

SAVE_EVERY = 10
VAULT_CALL_TIMEOUT_S = 10.0
CORRUPTION_CEILING = 1e6

SYMBOL_IDENTIFIERS: Dict[str, str] = {
    "usdc": "coingecko:usd-coin",
    "usdt": "coingecko:tether",
    "weth": "coingecko:weth",
    "wbtc": "coingecko:wrapped-bitcoin",
    "dai": "coingecko:dai",
    "ton": "ton:EQAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAM9c",
    "matic": "coingecko:matic-network",
    "avax": "coingecko:avalanche-2",
    "bnb": "coingecko:bnb",
    "link": "coingecko:chainlink",
    "uni": "coingecko:uniswap",
    "aave": "coingecko:aave",
    "comp": "coingecko:compound-governance-token",
    "sushi": "coingecko:sushi",
    "crv": "coingecko:curve-dao-token",
    "yfi": "coingecko:yearn-finance",
    "1inch": "coingecko:1inch",
    "bal": "coingecko:balancer",
    "snx": "coingecko:havven",
    "ren": "coingecko:republic-protocol",
}

# Wrapped gas tokens priced as the native coin of their home chain.
WRAPPED_NATIVE_IDENTIFIERS: Dict[str, Dict[str, str]] = {
    "wavax": {"43114": "coingecko:avalanche-2"},
    "wbnb": {"56": "coingecko:bnb"},
    "wmatic": {"137": "coingecko:matic-network"},
}


def infer_identifier(symbol: str, chain_id: str) -> Optional[str]:
    sym = (symbol or "").strip().lower()
    if not sym:
        return None
    wrapped = WRAPPED_NATIVE_IDENTIFIERS.get(sym)
    if wrapped and str(chain_id) in wrapped:
        return wrapped[str(chain_id)]
    return SYMBOL_IDENTIFIERS.get(sym)


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class RequiredAsset:
    chain_id: str
    address: str
    timestamps: Set[int] = field(default_factory=set)
    blocks: Dict[int, int] = field(default_factory=dict)
    frequency: int = 0

    @property
    def key(self) -> str:
        return asset_key(self.chain_id, self.address)

    def merged_with(self, other: Optional["RequiredAsset"]) -> "RequiredAsset":
        out = RequiredAsset(self.chain_id, self.address, set(self.timestamps), dict(self.blocks), self.frequency)
        if other is not None:
            out.timestamps |= other.timestamps
            for ts, block in other.blocks.items():
                out.blocks.setdefault(ts, block)
            out.frequency += other.frequency
        return out


def extract_required_assets(snapshot: AuctionSnapshot) -> List[RequiredAsset]:
    acc: Dict[str, RequiredAsset] = {}
    for auction in snapshot.all_auctions():
        for received in auction.assets:
            if not received.underlying_asset:
                logger.warning(
                    "auction %s: vault %s has no underlying asset, skipping", auction.auction_id, received.vault
                )
                continue
            key = asset_key(auction.chain_id, received.underlying_asset)
            entry = acc.get(key)
            if entry is None:
                entry = RequiredAsset(chain_id=auction.chain_id, address=normalize_address(received.underlying_asset))
                acc[key] = entry
            entry.timestamps.add(auction.timestamp)
            entry.blocks.setdefault(auction.timestamp, auction.block_number)
            entry.frequency += 1
    return sorted(acc.values(), key=lambda r: (-r.frequency, r.key))


def reference_requirement(snapshot: AuctionSnapshot, reference_key: str = REFERENCE_ASSET) -> RequiredAsset:
    chain_id, address = split_asset_key(reference_key)
    req = RequiredAsset(chain_id=chain_id, address=address)
    for auction in snapshot.all_auctions():
        req.timestamps.add(auction.timestamp)
        if auction.chain_id == chain_id:
            req.blocks.setdefault(auction.timestamp, auction.block_number)
        req.frequency += 1
    return req


class AssetState(enum.Enum):
    COMPLETE = "complete"
    ALIASED = "aliased"
    REFETCH = "refetch"
    INFER = "infer"
    FAILED = "failed"
    UNTRACKED = "untracked"


@dataclass(frozen=True)
class PriceBounds:
    min_value: float = 1e-6
    max_value: float = 1e6

    def accepts(self, value: float) -> bool:
        return self.min_value <= value <= self.max_value


@dataclass(frozen=True)
class VaultInfo:
    underlying_asset: str
    symbol: str
    decimals: int


def vault_price(
    underlying_price: float, converted: int, underlying_decimals: int, bounds: PriceBounds = PriceBounds()
) -> Optional[float]:
    """Price of one vault share, given ``convertToAssets(1 share)`` in underlying units."""
    rate = int(converted) / (10 ** int(underlying_decimals))
    if not bounds.accepts(rate):
        logger.warning("implausible exchange rate %s (converted=%s, decimals=%s)", rate, converted, underlying_decimals)
        return None
    price = float(underlying_price) * rate
    if not bounds.accepts(price):
        logger.warning("implausible vault price %s (underlying=%s, rate=%s)", price, underlying_price, rate)
        return None
    return round(price, 6)


RpcProvider = Callable[[str], Optional[ChainRpc]]


class AssetCollector:
    def __init__(
        self,
        book: AssetBook,
        fetcher: PriceFetcher,
        rpc_for_chain: RpcProvider,
        *,
        reference_key: str = REFERENCE_ASSET,
        save_every: int = SAVE_EVERY,
        bounds: PriceBounds = PriceBounds(),
        retry_failed: bool = False,
    ) -> None:
        self.book = book
        self.fetcher = fetcher
        self.rpc_for_chain = rpc_for_chain
        self.reference_key = reference_key
        self.save_every = max(1, int(save_every))
        self.bounds = bounds
        self.retry_failed = retry_failed
        self.required: Dict[str, RequiredAsset] = {}
        self._since_save = 0
        self._in_progress: Set[str] = set()

    # Bookkeeping

    def _note_success(self) -> None:
        self._since_save += 1
        if self._since_save >= self.save_every:
            self.book.save()
            self._since_save = 0

    def _store(self, record: AssetPriceRecord, ts: int, price: float) -> bool:
        if not self.bounds.accepts(price):
            logger.warning("%s: rejecting implausible price %s at %d", record.key, price, ts)
            return False
        record.prices[ts] = price
        self._note_success()
        return True

    def _ensure_record(self, req: RequiredAsset, provenance: Optional[Provenance] = None) -> AssetPriceRecord:
        record = self.book.record(req.key)
        if record is None:
            record = AssetPriceRecord(chain_id=req.chain_id, address=req.address, provenance=provenance)
            self.book.put(record)
        elif record.provenance is None and provenance is not None:
            record.provenance = provenance
        return record

    def _absorb(self, record: AssetPriceRecord, point: PricePoint) -> None:
        if not record.symbol and point.symbol:
            record.symbol = point.symbol
        if record.decimals is None and point.decimals is not None:
            record.decimals = point.decimals

    def _requirement_for(self, chain_id: str, address: str, timestamps: Iterable[int]) -> RequiredAsset:
        req = RequiredAsset(chain_id=str(chain_id), address=normalize_address(address), timestamps=set(timestamps))
        return req.merged_with(self.required.get(req.key))

    def update_failed(self, req: RequiredAsset) -> bool:
        record = self.book.record(req.key)
        complete = record is not None and record.covers(req.timestamps)
        if complete:
            if req.key in self.book.failed:
                logger.info("%s: coverage complete, clearing from failed set", req.key)
            self.book.clear_failed(req.key)
        else:
            self.book.mark_failed(req.key)
        return complete

    # State machine

    def classify(self, req: RequiredAsset) -> AssetState:
        record = self.book.record(req.key)
        if record is not None and record.covers(req.timestamps):
            return AssetState.COMPLETE
        mapping = self.book.mapping_for(req.key)
        if mapping is not None:
            base = self.book.record(mapping.base_asset)
            if base is not None and base.covers(req.timestamps):
                return AssetState.ALIASED
        if record is not None and record.provenance is not None:
            return AssetState.REFETCH
        if req.key in self.book.failed and not self.retry_failed:
            return AssetState.FAILED
        if record is not None and record.prices:
            return AssetState.INFER
        return AssetState.UNTRACKED

    def process(self, req: RequiredAsset) -> bool:
        if req.key in self._in_progress:
            return False
        self._in_progress.add(req.key)
        try:
            return self._process(req)
        finally:
            self._in_progress.discard(req.key)

    def _process(self, req: RequiredAsset) -> bool:
        state = self.classify(req)
        logger.info("%s: %s (%d timestamps)", req.key, state.value, len(req.timestamps))

        if state is AssetState.COMPLETE:
            self.book.clear_failed(req.key)
            return True
        if state is AssetState.FAILED:
            logger.info("%s: in failed set, skipping (use --retry-failed)", req.key)
            return False

        if state is AssetState.ALIASED:
            mapping = self.book.mapping_for(req.key)
            if mapping is not None:
                self.apply_alias(req, mapping.base_asset)
        elif state is AssetState.REFETCH:
            self.refetch(req)
        elif state is AssetState.INFER:
            self.infer_and_refetch(req)
        else:
            self.collect_untracked(req)

        complete = self.update_failed(req)
        record = self.book.record(req.key)
        if state is not AssetState.ALIASED and record is not None and record.prices:
            self.link_equivalents(req)
        self.book.save()
        self._since_save = 0
        if not complete:
            record = self.book.record(req.key)
            missing = len(record.missing(req.timestamps)) if record is not None else len(req.timestamps)
            logger.warning("%s: incomplete coverage, %d timestamps missing", req.key, missing)
        return complete

    # Collection paths

    def collect_direct(self, record: AssetPriceRecord, chain_id: str, address: str, timestamps: Iterable[int]) -> int:
        collected = 0
        for ts in record.missing(timestamps):
            try:
                point = self.fetcher.get_price(chain_id, address, ts)
            except PriceUnavailable as exc:
                logger.warning("%s: %s", record.key, exc)
                continue
            finally:
                self.fetcher.pause()
            self._absorb(record, point)
            if self._store(record, ts, point.price):
                collected += 1
        return collected

    def collect_by_identifier(self, record: AssetPriceRecord, identifier: str, timestamps: Iterable[int]) -> int:
        collected = 0
        for ts in record.missing(timestamps):
            try:
                point = self.fetcher.get_price_by_id(identifier, ts)
            except PriceUnavailable as exc:
                logger.warning("%s: %s", record.key, exc)
                continue
            finally:
                self.fetcher.pause()
            self._absorb(record, point)
            if self._store(record, ts, point.price):
                collected += 1
        return collected

    def collect_untracked(self, req: RequiredAsset) -> None:
        first = min(req.timestamps)
        try:
            self.fetcher.get_price(req.chain_id, req.address, first)
        except PriceUnavailable as exc:
            logger.info("%s: no direct price (%s), probing for a vault", req.key, exc.reason)
            info = self.detect_vault(req)
            if info is not None:
                self.collect_vault(req, info)
            return
        record = self._ensure_record(req, ExternalSource(identifier=self.fetcher.coin_id(req.chain_id, req.address)))
        self.collect_direct(record, req.chain_id, req.address, req.timestamps)

    def infer_and_refetch(self, req: RequiredAsset) -> None:
        record = self.book.record(req.key)
        if record is None:
            return
        identifier = infer_identifier(record.symbol, req.chain_id)
        if identifier is None:
            logger.warning("%s: cannot infer a price identifier from symbol %r", req.key, record.symbol)
            return
        logger.info("%s: inferred identifier %s from symbol %s", req.key, identifier, record.symbol)
        record.provenance = ExternalSource(identifier=identifier, auto_detected=True)
        self.refetch(req)

    def refetch(self, req: RequiredAsset) -> None:
        record = self.book.record(req.key)
        if record is None or record.provenance is None:
            return
        prov = record.provenance
        before = len(record.prices)
        if isinstance(prov, ExternalSource):
            fetched = self.collect_by_identifier(record, prov.identifier, req.timestamps)
            prov.last_refetch = {"at": utc_now_iso(), "fetched": fetched}
        elif isinstance(prov, ManualSource):
            if not prov.replayable:
                logger.warning("%s: manual '%s' prices cannot be replayed", req.key, prov.method)
                return
            for ts in record.missing(req.timestamps):
                price = prov.price_at(ts)
                if price is not None:
                    self._store(record, ts, price)
        elif isinstance(prov, CrossChainAlias):
            self.refetch_alias(req, record, prov.base_asset)
        elif isinstance(prov, VaultDerived):
            self.refetch_vault(req, record, prov.underlying_asset)
        logger.info("%s: refetch added %d prices", req.key, len(record.prices) - before)

    # Vaults

    def detect_vault(self, req: RequiredAsset) -> Optional[VaultInfo]:
        rpc = self.rpc_for_chain(req.chain_id)
        if rpc is None:
            logger.info("%s: no RPC for chain %s, cannot probe for a vault", req.key, req.chain_id)
            return None
        try:
            underlying = rpc.vault_asset(req.address, timeout_s=VAULT_CALL_TIMEOUT_S)
            rpc.convert_to_assets(req.address, 1, timeout_s=VAULT_CALL_TIMEOUT_S)
            symbol = rpc.erc20_symbol(req.address, timeout_s=VAULT_CALL_TIMEOUT_S)
            decimals = rpc.erc20_decimals(req.address, timeout_s=VAULT_CALL_TIMEOUT_S)
        except (RpcError, ValueError) as exc:
            logger.info("%s: not a vault (%s)", req.key, exc)
            return None
        underlying = normalize_address(underlying)
        if is_zero_address(underlying) or underlying == req.address:
            return None
        logger.info("%s: vault %s over %s", req.key, symbol, underlying)
        return VaultInfo(underlying_asset=underlying, symbol=symbol, decimals=decimals)

    def collect_vault(self, req: RequiredAsset, info: VaultInfo) -> None:
        underlying_key = asset_key(req.chain_id, info.underlying_asset)
        record = self._ensure_record(req, VaultDerived(underlying_asset=underlying_key))
        if not record.symbol:
            record.symbol = info.symbol
        if record.decimals is None:
            record.decimals = info.decimals
        self.refetch_vault(req, record, underlying_key)

    def refetch_vault(self, req: RequiredAsset, record: AssetPriceRecord, underlying_key: str) -> None:
        rpc = self.rpc_for_chain(req.chain_id)
        if rpc is None:
            logger.warning("%s: no RPC for chain %s, cannot compute vault prices", req.key, req.chain_id)
            return
        chain_id, underlying_address = split_asset_key(underlying_key)
        missing = record.missing(req.timestamps)
        if not missing:
            return
        underlying_req = self._requirement_for(chain_id, underlying_address, missing)
        self.process(underlying_req)
        underlying = self.book.record(underlying_key)
        if underlying is None:
            logger.warning("%s: underlying %s has no prices", req.key, underlying_key)
            return

        underlying_decimals = underlying.decimals
        if underlying_decimals is None:
            try:
                underlying_decimals = rpc.erc20_decimals(underlying_address, timeout_s=VAULT_CALL_TIMEOUT_S)
            except (RpcError, ValueError):
                underlying_decimals = 18
            underlying.decimals = underlying_decimals
        one_share = 10 ** (record.decimals if record.decimals is not None else 18)

        for ts in missing:
            underlying_price = underlying.prices.get(ts)
            if underlying_price is None:
                logger.warning("%s: no underlying price at %d, skipping", req.key, ts)
                continue
            converted = self._converted_amount(rpc, req.address, one_share, req.blocks.get(ts))
            if converted is None:
                continue
            price = vault_price(underlying_price, converted, underlying_decimals, self.bounds)
            if price is not None:
                self._store(record, ts, price)

    def _converted_amount(self, rpc: ChainRpc, vault: str, shares: int, block: Optional[int]) -> Optional[int]:
        if block is not None:
            try:
                return rpc.convert_to_assets(vault, shares, block, timeout_s=VAULT_CALL_TIMEOUT_S)
            except (RpcError, ValueError) as exc:
                logger.debug("%s: convertToAssets at block %d failed (%s), using latest", vault, block, exc)
        try:
            return rpc.convert_to_assets(vault, shares, "latest", timeout_s=VAULT_CALL_TIMEOUT_S)
        except (RpcError, ValueError) as exc:
            logger.warning("%s: convertToAssets failed: %s", vault, exc)
            return None

    # Cross-chain aliasing

    def apply_alias(self, req: RequiredAsset, base_key: str) -> int:
        base = self.book.record(base_key)
        record = self._ensure_record(req, CrossChainAlias(base_asset=base_key))
        if base is None:
            return 0
        if not record.symbol:
            record.symbol = base.symbol
        if record.decimals is None:
            record.decimals = base.decimals
        copied = 0
        for ts in record.missing(req.timestamps):
            price = base.prices.get(ts)
            if price is not None:
                record.prices[ts] = price
                copied += 1
        if copied:
            logger.info("%s: copied %d prices from %s", req.key, copied, base_key)
        return copied

    def refetch_alias(self, req: RequiredAsset, record: AssetPriceRecord, base_key: str) -> None:
        base_chain, base_address = split_asset_key(base_key)
        base = self.book.record(base_key)
        if base is None:
            base = AssetPriceRecord(
                chain_id=base_chain,
                address=base_address,
                provenance=ExternalSource(identifier=self.fetcher.coin_id(base_chain, base_address)),
            )
            self.book.put(base)
        missing = record.missing(req.timestamps)
        gaps = [ts for ts in missing if ts not in base.prices]
        if gaps:
            self.collect_direct(base, base_chain, base_address, gaps)
        self.apply_alias(req, base_key)

    def link_equivalents(self, req: RequiredAsset) -> None:
        if is_native_asset(req.address):
            return
        key = mapping_key(req.address)
        mapping = self.book.mappings.get(key)
        if mapping is not None and mapping.base_asset != req.key:
            return
        others = [
            other
            for other in self.required.values()
            if other.address == req.address and other.chain_id != req.chain_id
        ]
        if mapping is None:
            if not others:
                return
            mapping = AssetMapping(base_asset=req.key, discovered_at=utc_now_iso())
            self.book.mappings[key] = mapping
            logger.info("created mapping %s with base %s", key, req.key)
        for other in others:
            if mapping.add(Equivalent(asset_key=other.key, chain_id=other.chain_id)):
                logger.info("%s: cross-chain equivalent of %s", other.key, req.key)

        for equivalent in list(mapping.equivalents):
            eq_req = self.required.get(equivalent.asset_key)
            if eq_req is None or eq_req.key in self._in_progress:
                continue
            record = self.book.record(eq_req.key)
            if record is not None and record.covers(eq_req.timestamps):
                self.book.clear_failed(eq_req.key)
                continue
            self.apply_alias(eq_req, req.key)
            self.process(eq_req)

    # Runs

    def collect_reference(self, snapshot: AuctionSnapshot) -> bool:
        req = reference_requirement(snapshot, self.reference_key)
        if not req.timestamps:
            return True
        record = self.book.record(req.key)
        if record is None:
            record = AssetPriceRecord(
                chain_id=req.chain_id,
                address=req.address,
                symbol=REFERENCE_SYMBOL,
                decimals=REFERENCE_DECIMALS,
                provenance=ExternalSource(identifier=self.fetcher.coin_id(req.chain_id, req.address)),
            )
            self.book.put(record)
        missing = record.missing(req.timestamps)
        if missing:
            logger.info("%s: collecting %d reference prices", req.key, len(missing))
            self.collect_direct(record, req.chain_id, req.address, missing)
            missing = record.missing(req.timestamps)
        if missing and req.key == REFERENCE_ASSET:
            logger.info("%s: %d prices missing by contract, trying %s", req.key, len(missing), REFERENCE_FALLBACK_ID)
            self.collect_by_identifier(record, REFERENCE_FALLBACK_ID, missing)
        complete = self.update_failed(req)
        self.book.save()
        self._since_save = 0
        if not complete:
            logger.warning("%s: %d reference prices still missing", req.key, len(record.missing(req.timestamps)))
        return complete

    def cleanup_corrupted(self, ceiling: float = CORRUPTION_CEILING) -> int:
        removed = 0
        for record in self.book.records.values():
            corrupted = [ts for ts, price in record.prices.items() if price > ceiling]
            for ts in corrupted:
                logger.warning("%s: removing corrupted price %s at %d", record.key, record.prices[ts], ts)
                del record.prices[ts]
            removed += len(corrupted)
        self.book.save()
        return removed

    def run(self, snapshot: AuctionSnapshot, target: Optional[str] = None) -> Dict[str, Any]:
        requirements = extract_required_assets(snapshot)
        self.required = {req.key: req for req in requirements}
        logger.info("%d assets referenced by %d auctions", len(requirements), len(list(snapshot.all_auctions())))

        self.collect_reference(snapshot)

        if target is not None:
            requirements = [self.required[target]]
        complete = 0
        for req in requirements:
            if self.process(req):
                complete += 1
        self.book.save()
        return {
            "assets": len(requirements),
            "complete": complete,
            "failed": len(self.book.failed),
            "prices_cached": self.fetcher.cache_size,
        }


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Collect USD prices for every asset received in auctions.")
    parser.add_argument("--asset", default="", help="only process this chainId:address")
    parser.add_argument("--analysis-file", default=data_path("feeflow-analysis.json"))
    parser.add_argument("--prices-file", default=data_path("asset-prices.json"))
    parser.add_argument("--mappings-file", default=data_path("asset-mappings.json"))
    parser.add_argument("--failed-file", default=data_path("failed-assets.json"))
    parser.add_argument("--cache-file", default=data_path("asset-cache.json"))
    parser.add_argument("--reference-asset", default=REFERENCE_ASSET)
    parser.add_argument("--retry-failed", action="store_true", help="reprocess assets in the failed set")
    parser.add_argument("--cleanup-corrupted", action="store_true", help="drop prices above --ceiling and exit")
    parser.add_argument("--ceiling", type=float, default=CORRUPTION_CEILING)
    parser.add_argument("--min-price", type=float, default=PriceBounds.min_value)
    parser.add_argument("--max-price", type=float, default=PriceBounds.max_value)
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def _rpc_provider(session: requests.Session) -> RpcProvider:
    urls = discover_rpc_urls()
    clients: Dict[str, ChainRpc] = {}

    def provider(chain_id: str) -> Optional[ChainRpc]:
        cid = str(chain_id)
        if cid not in clients:
            url = urls.get(cid)
            if not url:
                return None
            clients[cid] = ChainRpc(url, session=session)
        return clients[cid]

    return provider


def run(argv: Optional[Sequence[str]] = None) -> int:
    load_env()
    args = _parse_args(argv)
    configure_logging(args.log_level)

    book = AssetBook.load(args.prices_file, args.mappings_file, args.failed_file)
    session = requests.Session()
    fetcher = PriceFetcher(session)
    collector = AssetCollector(
        book,
        fetcher,
        _rpc_provider(session),
        reference_key=args.reference_asset.lower(),
        bounds=PriceBounds(min_value=args.min_price, max_value=args.max_price),
        retry_failed=args.retry_failed,
    )

    if args.cleanup_corrupted:
        removed = collector.cleanup_corrupted(args.ceiling)
        logger.info("removed %d corrupted prices", removed)
        return 0

    fetcher.load_cache(args.cache_file)
    try:
        snapshot = AuctionStore(args.analysis_file).load(required=True)
        target = None
        if args.asset:
            chain_id, address = split_asset_key(args.asset)
            target = asset_key(chain_id, address)
            if target not in {r.key for r in extract_required_assets(snapshot)}:
                logger.error("asset %s is not referenced by any auction", target)
                return 1
        summary = collector.run(snapshot, target)
    except BaseException:
        # Keep whatever was collected before the failure.
        book.save()
        fetcher.save_cache(args.cache_file)
        raise
    fetcher.save_cache(args.cache_file)

    logger.info(
        "%d assets processed, %d complete, %d in failed set, %d cached prices",
        summary["assets"],
        summary["complete"],
        summary["failed"],
        summary["prices_cached"],
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        return run(argv)
    except Exception as exc:
        logger.error("error: %s: %s", exc.__class__.__name__, exc)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
