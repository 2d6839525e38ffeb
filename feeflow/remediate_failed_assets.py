import argparse
import logging
from typing import Any, Dict, List, Optional, Sequence

import requests

from feeflow.chain_rpc import ChainRpc, RpcError
from feeflow.chains import (
    asset_key,
    configure_logging,
    data_path,
    load_env,
    rpc_url,
    split_asset_key,
)
from feeflow.collect_asset_prices import (
    REFERENCE_ASSET,
    AssetCollector,
    RequiredAsset,
    extract_required_assets,
    reference_requirement,
    utc_now_iso,
)
from feeflow.models import (
    AssetMapping,
    AssetPriceRecord,
    AuctionSnapshot,
    CrossChainAlias,
    Equivalent,
    ExternalSource,
    ManualSource,
    mapping_key,
)
from feeflow.price_fetcher import PriceFetcher
from feeflow.snapshots import AssetBook, AuctionStore

logger = logging.getLogger(__name__)


def remediation_requirements(
    snapshot: AuctionSnapshot, reference_key: str = REFERENCE_ASSET
) -> Dict[str, RequiredAsset]:
    """Every asset an operator may fix, the reference asset included."""
    required = {req.key: req for req in extract_required_assets(snapshot)}
    reference = reference_requirement(snapshot, reference_key)
    if reference.timestamps:
        required[reference.key] = reference.merged_with(required.get(reference.key))
    return required


class Remediation:
    """Operator fixes for assets the collector could not price on its own."""

    def __init__(
        self,
        book: AssetBook,
        required: Dict[str, RequiredAsset],
        fetcher: Optional[PriceFetcher] = None,
        rpc: Optional[ChainRpc] = None,
    ) -> None:
        self.book = book
        self.required = required
        self.fetcher = fetcher
        self.rpc = rpc

    def _collector(self) -> AssetCollector:
        if self.fetcher is None:
            raise RuntimeError("this action needs a price fetcher")
        collector = AssetCollector(self.book, self.fetcher, lambda _chain_id: self.rpc)
        collector.required = self.required
        return collector

    def requirement(self, key: str) -> RequiredAsset:
        chain_id, address = split_asset_key(key)
        req = self.required.get(asset_key(chain_id, address))
        if req is None:
            raise ValueError(f"asset {key} is not referenced by any auction")
        return req

    def _record(self, req: RequiredAsset, symbol: Optional[str], decimals: Optional[int]) -> AssetPriceRecord:
        record = self.book.record(req.key)
        if record is None:
            record = AssetPriceRecord(chain_id=req.chain_id, address=req.address)
            self.book.put(record)
        if symbol:
            record.symbol = symbol
        elif not record.symbol and self.rpc is not None:
            try:
                record.symbol = self.rpc.erc20_symbol(req.address)
            except (RpcError, ValueError) as exc:
                logger.warning("%s: symbol() failed: %s", req.key, exc)
        if decimals is not None:
            record.decimals = decimals
        elif record.decimals is None and self.rpc is not None:
            try:
                record.decimals = self.rpc.erc20_decimals(req.address)
            except (RpcError, ValueError) as exc:
                logger.warning("%s: decimals() failed: %s", req.key, exc)
        return record

    def _settle(self, req: RequiredAsset) -> bool:
        record = self.book.record(req.key)
        complete = record is not None and record.covers(req.timestamps)
        if complete:
            self.book.clear_failed(req.key)
            logger.info("%s: coverage complete, removed from failed set", req.key)
        else:
            missing = len(record.missing(req.timestamps)) if record is not None else len(req.timestamps)
            logger.warning("%s: still %d timestamps missing, kept in failed set", req.key, missing)
        self.book.save()
        return complete

    def list_failed(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for key in sorted(self.book.failed):
            req = self.required.get(key)
            record = self.book.record(key)
            timestamps = req.timestamps if req is not None else set()
            _, address = split_asset_key(key)
            candidates = sorted(
                other_key
                for other_key, other in self.book.records.items()
                if other_key != key and other.address == address and other.prices
            )
            out.append(
                {
                    "key": key,
                    "symbol": record.symbol if record is not None else "",
                    "required": len(timestamps),
                    "covered": len(timestamps) - len(record.missing(timestamps)) if record is not None else 0,
                    "candidates": candidates,
                }
            )
        return out

    def alias(self, source: str, target: str) -> bool:
        req = self.requirement(source)
        target_chain, target_address = split_asset_key(target)
        base_key = asset_key(target_chain, target_address)
        key = mapping_key(target_address)
        mapping = self.book.mappings.get(key)
        if mapping is None:
            mapping = AssetMapping(base_asset=base_key, discovered_at=utc_now_iso())
            self.book.mappings[key] = mapping
        elif mapping.base_asset != base_key:
            raise ValueError(f"{key} already maps to base {mapping.base_asset}")
        mapping.add(Equivalent(asset_key=req.key, chain_id=req.chain_id))

        record = self.book.record(req.key)
        if record is None:
            record = AssetPriceRecord(chain_id=req.chain_id, address=req.address)
            self.book.put(record)
        record.provenance = CrossChainAlias(base_asset=base_key)
        self._collector().refetch_alias(req, record, base_key)
        return self._settle(req)

    def manual(
        self, key: str, source: ManualSource, symbol: Optional[str] = None, decimals: Optional[int] = None
    ) -> bool:
        req = self.requirement(key)
        record = self._record(req, symbol, decimals)
        record.provenance = source
        for ts in sorted(req.timestamps):
            price = source.price_at(ts)
            if price is not None:
                record.prices[ts] = price
        return self._settle(req)

    def fixed(self, key: str, price: float, **meta: Any) -> bool:
        return self.manual(key, ManualSource(method="fixed", params={"price": float(price)}), **meta)

    def linear(self, key: str, start_price: float, end_price: float, **meta: Any) -> bool:
        req = self.requirement(key)
        params = {
            "start_ts": min(req.timestamps),
            "start_price": float(start_price),
            "end_ts": max(req.timestamps),
            "end_price": float(end_price),
        }
        return self.manual(key, ManualSource(method="linear", params=params), **meta)

    def growth(self, key: str, start_price: float, rate: float, period_days: float = 1.0, **meta: Any) -> bool:
        req = self.requirement(key)
        params = {
            "start_ts": min(req.timestamps),
            "start_price": float(start_price),
            "rate": float(rate),
            "period_days": float(period_days),
        }
        return self.manual(key, ManualSource(method="growth", params=params), **meta)

    def individual(self, key: str, prices: Dict[int, float], **meta: Any) -> bool:
        req = self.requirement(key)
        unknown = sorted(set(prices) - req.timestamps)
        if unknown:
            raise ValueError(f"timestamps not required by {req.key}: {unknown}")
        record = self._record(req, meta.get("symbol"), meta.get("decimals"))
        record.provenance = ManualSource(method="individual")
        record.prices.update({int(ts): float(px) for ts, px in prices.items()})
        return self._settle(req)

    def llama(self, key: str, identifier: str, symbol: Optional[str] = None, decimals: Optional[int] = None) -> bool:
        req = self.requirement(key)
        record = self._record(req, symbol, decimals)
        record.provenance = ExternalSource(identifier=identifier)
        fetched = self._collector().collect_by_identifier(record, identifier, req.timestamps)
        logger.info("%s: fetched %d prices via %s", req.key, fetched, identifier)
        return self._settle(req)

    def skip(self, key: str) -> None:
        chain_id, address = split_asset_key(key)
        normalized = asset_key(chain_id, address)
        if normalized not in self.book.failed:
            logger.info("%s is not in the failed set", normalized)
            return
        self.book.clear_failed(normalized)
        self.book.save()
        logger.info("%s removed from failed set without prices", normalized)


def _parse_individual(pairs: Sequence[str]) -> Dict[int, float]:
    out: Dict[int, float] = {}
    for pair in pairs:
        ts, sep, price = pair.partition("=")
        if not sep:
            raise ValueError(f"expected TIMESTAMP=PRICE, got {pair!r}")
        out[int(ts)] = float(price)
    return out


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resolve assets left in the failed set.")
    parser.add_argument("--analysis-file", default=data_path("feeflow-analysis.json"))
    parser.add_argument("--prices-file", default=data_path("asset-prices.json"))
    parser.add_argument("--mappings-file", default=data_path("asset-mappings.json"))
    parser.add_argument("--failed-file", default=data_path("failed-assets.json"))
    parser.add_argument("--reference-asset", default=REFERENCE_ASSET)
    parser.add_argument("--log-level", default="INFO")

    meta = argparse.ArgumentParser(add_help=False)
    meta.add_argument("--symbol", default=None)
    meta.add_argument("--decimals", type=int, default=None)

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("list", help="show failed assets and same-address candidates")

    p = sub.add_parser("alias", help="reuse another asset's price series")
    p.add_argument("source")
    p.add_argument("target")

    p = sub.add_parser("fixed", parents=[meta], help="constant price")
    p.add_argument("key")
    p.add_argument("price", type=float)

    p = sub.add_parser("linear", parents=[meta], help="linear between first and last required timestamp")
    p.add_argument("key")
    p.add_argument("start_price", type=float)
    p.add_argument("end_price", type=float)

    p = sub.add_parser("growth", parents=[meta], help="compounded growth from the first required timestamp")
    p.add_argument("key")
    p.add_argument("start_price", type=float)
    p.add_argument("rate", type=float)
    p.add_argument("--period-days", type=float, default=1.0)

    p = sub.add_parser("individual", parents=[meta], help="explicit TIMESTAMP=PRICE pairs")
    p.add_argument("key")
    p.add_argument("prices", nargs="+")

    p = sub.add_parser("llama", parents=[meta], help="price by an explicit DefiLlama identifier")
    p.add_argument("key")
    p.add_argument("identifier")

    p = sub.add_parser("skip", help="drop from the failed set without pricing")
    p.add_argument("key")
    return parser.parse_args(argv)


def run(argv: Optional[Sequence[str]] = None) -> int:
    load_env()
    args = _parse_args(argv)
    configure_logging(args.log_level)

    snapshot = AuctionStore(args.analysis_file).load(required=True)
    required = remediation_requirements(snapshot, args.reference_asset.lower())
    book = AssetBook.load(args.prices_file, args.mappings_file, args.failed_file)

    session = requests.Session()
    rpc: Optional[ChainRpc] = None
    key = getattr(args, "key", None) or getattr(args, "source", None)
    if key:
        url = rpc_url(split_asset_key(key)[0])
        if url:
            rpc = ChainRpc(url, session=session)
    remediation = Remediation(book, required, PriceFetcher(session), rpc)
    meta = {"symbol": getattr(args, "symbol", None), "decimals": getattr(args, "decimals", None)}

    if args.command == "list":
        for entry in remediation.list_failed():
            logger.info(
                "%s %s: %d/%d covered, candidates: %s",
                entry["key"],
                entry["symbol"] or "?",
                entry["covered"],
                entry["required"],
                ", ".join(entry["candidates"]) or "none",
            )
        return 0
    if args.command == "skip":
        remediation.skip(args.key)
        return 0

    if args.command == "alias":
        complete = remediation.alias(args.source, args.target)
    elif args.command == "fixed":
        complete = remediation.fixed(args.key, args.price, **meta)
    elif args.command == "linear":
        complete = remediation.linear(args.key, args.start_price, args.end_price, **meta)
    elif args.command == "growth":
        complete = remediation.growth(args.key, args.start_price, args.rate, args.period_days, **meta)
    elif args.command == "individual":
        complete = remediation.individual(args.key, _parse_individual(args.prices), **meta)
    else:
        complete = remediation.llama(args.key, args.identifier, **meta)
    return 0 if complete else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        return run(argv)
    except Exception as exc:
        logger.error("error: %s: %s", exc.__class__.__name__, exc)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
