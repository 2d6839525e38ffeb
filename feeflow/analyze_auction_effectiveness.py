import argparse
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from feeflow.chains import asset_key, chain_name, configure_logging, data_path, load_env
from feeflow.collect_asset_prices import REFERENCE_ASSET
from feeflow.models import AssetPriceRecord, Auction, AuctionSnapshot
from feeflow.price_fetcher import usd_value
from feeflow.snapshots import AuctionStore, PriceStore, write_json

logger = logging.getLogger(__name__)

PRICE_WINDOW_S = 6 * 3600

DEFAULT_OUTPUT = "auction-effectiveness-analysis.json"


class AnalysisError(RuntimeError):
    pass


class MissingReferencePrice(AnalysisError):
    pass


def price_near(record: Optional[AssetPriceRecord], ts: int, window: int = PRICE_WINDOW_S) -> Optional[float]:
    """Closest recorded price within ``window`` seconds; ties go to the earlier point."""
    if record is None or not record.prices:
        return None
    best: Optional[Tuple[int, float]] = None
    for price_ts in sorted(record.prices):
        diff = abs(price_ts - ts)
        if diff > window:
            continue
        if best is None or diff < best[0]:
            best = (diff, float(record.prices[price_ts]))
    return best[1] if best is not None else None


def discount_percentage(discount: float, received_usd: float) -> float:
    if received_usd == 0:
        return 0.0
    return discount / received_usd * 100


def treasury_outcome(discount: float) -> str:
    # Positive discount: the assets handed out were worth more than the payment.
    if discount > 0:
        return "loss"
    if discount < 0:
        return "gain"
    return "neutral"


def analyze_auction(
    auction: Auction,
    records: Dict[str, AssetPriceRecord],
    reference_key: str = REFERENCE_ASSET,
    window: int = PRICE_WINDOW_S,
) -> Dict[str, Any]:
    reference_price = price_near(records.get(reference_key), auction.timestamp, window)
    if reference_price is None:
        raise MissingReferencePrice(f"no reference price within {window}s of {auction.timestamp}")

    payment_usd = usd_value(auction.payment_amount, auction.payment_decimals, reference_price)

    received: List[Dict[str, Any]] = []
    total_received = 0.0
    for asset in auction.assets:
        if not asset.underlying_asset:
            logger.warning("%s: vault %s has no underlying asset, omitted", auction.auction_id, asset.vault)
            continue
        key = asset_key(auction.chain_id, asset.underlying_asset)
        record = records.get(key)
        price = price_near(record, auction.timestamp, window)
        if record is None or price is None:
            logger.warning("%s: no price for %s at %d, omitted", auction.auction_id, key, auction.timestamp)
            continue
        if record.decimals is None:
            logger.warning("%s: unknown decimals for %s, omitted", auction.auction_id, key)
            continue
        value = usd_value(asset.underlying_amount, record.decimals, price)
        received.append(
            {
                "address": asset.underlying_asset,
                "vault": asset.vault,
                "symbol": record.symbol,
                "decimals": record.decimals,
                "amount": asset.underlying_amount,
                "price_usd": price,
                "usd_value": value,
                "chain_id": auction.chain_id,
            }
        )
        total_received += value

    discount = total_received - payment_usd
    return {
        "auction_id": auction.auction_id,
        "chain_id": auction.chain_id,
        "tx_hash": auction.tx_hash,
        "block_number": auction.block_number,
        "timestamp": auction.timestamp,
        "payment": {
            "amount": auction.payment_amount,
            "decimals": auction.payment_decimals,
            "usd_value": payment_usd,
            "price_usd": reference_price,
        },
        "assets_received": received,
        "total_received_usd": total_received,
        "discount": discount,
        "discount_percentage": discount_percentage(discount, total_received),
        "treasury_outcome": treasury_outcome(discount),
    }


def _new_bucket() -> Dict[str, Any]:
    return {"auctions": 0, "payment_amount": 0, "payment_usd": 0.0, "received_usd": 0.0}


def _add(bucket: Dict[str, Any], result: Dict[str, Any]) -> None:
    bucket["auctions"] += 1
    bucket["payment_amount"] += int(result["payment"]["amount"])
    bucket["payment_usd"] += result["payment"]["usd_value"]
    bucket["received_usd"] += result["total_received_usd"]


def _close(bucket: Dict[str, Any]) -> Dict[str, Any]:
    discount = bucket["received_usd"] - bucket["payment_usd"]
    return {
        "auctions": bucket["auctions"],
        "payment_amount": str(bucket["payment_amount"]),
        "payment_usd": bucket["payment_usd"],
        "received_usd": bucket["received_usd"],
        "discount": discount,
        "discount_percentage": discount_percentage(discount, bucket["received_usd"]),
    }


def month_of(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m")


def summarize(results: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    overall = _new_bucket()
    chains: Dict[str, Dict[str, Any]] = {}
    months: Dict[str, Dict[str, Any]] = {}
    assets: Dict[str, Dict[str, Any]] = {}

    for result in results:
        _add(overall, result)
        _add(chains.setdefault(result["chain_id"], _new_bucket()), result)
        _add(months.setdefault(month_of(result["timestamp"]), _new_bucket()), result)
        for item in result["assets_received"]:
            entry = assets.setdefault(
                item["address"],
                {
                    "symbol": item["symbol"],
                    "amount": 0,
                    "usd_value": 0.0,
                    "appearances": 0,
                    "price_sum": 0.0,
                    "chains": [],
                },
            )
            entry["amount"] += int(item["amount"])
            entry["usd_value"] += item["usd_value"]
            entry["appearances"] += 1
            entry["price_sum"] += item["price_usd"]
            if item["chain_id"] not in entry["chains"]:
                entry["chains"].append(item["chain_id"])

    chain_breakdown = {}
    for cid in sorted(chains, key=lambda c: int(c) if c.isdigit() else 0):
        row = _close(chains[cid])
        row["chain_name"] = chain_name(cid)
        chain_breakdown[cid] = row

    summary = _close(overall)
    summary["chain_breakdown"] = chain_breakdown
    return {
        "summary": summary,
        "month_breakdown": {month: _close(months[month]) for month in sorted(months)},
        "asset_breakdown": {
            address: {
                "symbol": entry["symbol"],
                "total_amount": str(entry["amount"]),
                "total_usd_value": entry["usd_value"],
                "appearances": entry["appearances"],
                "average_price": entry["price_sum"] / entry["appearances"],
                "chains": sorted(entry["chains"]),
            }
            for address, entry in assets.items()
        },
    }


def analyze(
    snapshot: AuctionSnapshot,
    records: Dict[str, AssetPriceRecord],
    *,
    reference_key: str = REFERENCE_ASSET,
    window: int = PRICE_WINDOW_S,
    files: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    results: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for auction in snapshot.all_auctions():
        try:
            results.append(analyze_auction(auction, records, reference_key, window))
        except (AnalysisError, ValueError, TypeError) as exc:
            logger.error("%s excluded: %s", auction.auction_id, exc)
            errors.append(
                {
                    "auction_id": auction.auction_id,
                    "chain_id": auction.chain_id,
                    "tx_hash": auction.tx_hash,
                    "timestamp": auction.timestamp,
                    "error": str(exc),
                }
            )

    out = summarize(results)
    out["auctions"] = results
    out["analysis"] = {
        "generated_at": datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "files": dict(files or {}),
        "errors": errors,
    }
    return out


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compare USD paid against USD received per auction.")
    parser.add_argument("--analysis-file", default=data_path("feeflow-analysis.json"))
    parser.add_argument("--prices-file", default=data_path("asset-prices.json"))
    parser.add_argument("--output", default=data_path(DEFAULT_OUTPUT))
    parser.add_argument("--reference-asset", default=REFERENCE_ASSET)
    parser.add_argument("--window-s", type=int, default=PRICE_WINDOW_S)
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def run(argv: Optional[Sequence[str]] = None) -> int:
    load_env()
    args = _parse_args(argv)
    configure_logging(args.log_level)

    snapshot = AuctionStore(args.analysis_file).load(required=True)
    records = PriceStore(args.prices_file).load(required=True)

    result = analyze(
        snapshot,
        records,
        reference_key=args.reference_asset.lower(),
        window=args.window_s,
        files={
            "analysis_file": os.path.basename(args.analysis_file),
            "prices_file": os.path.basename(args.prices_file),
        },
    )
    write_json(args.output, result)

    summary = result["summary"]
    logger.info(
        "%d auctions analyzed, %d excluded: paid $%.2f, received $%.2f, discount $%.2f (%.2f%%)",
        summary["auctions"],
        len(result["analysis"]["errors"]),
        summary["payment_usd"],
        summary["received_usd"],
        summary["discount"],
        summary["discount_percentage"],
    )
    for cid, row in summary["chain_breakdown"].items():
        logger.info(
            "chain %s (%s): %d auctions, discount $%.2f", cid, row["chain_name"], row["auctions"], row["discount"]
        )
    logger.info("wrote %s", args.output)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        return run(argv)
    except Exception as exc:
        logger.error("error: %s: %s", exc.__class__.__name__, exc)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
