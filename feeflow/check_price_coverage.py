import argparse
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from feeflow.chains import configure_logging, data_path, load_env
from feeflow.collect_asset_prices import REFERENCE_ASSET, RequiredAsset, extract_required_assets, reference_requirement
from feeflow.models import AssetPriceRecord, AuctionSnapshot
from feeflow.snapshots import AuctionStore, PriceStore, write_json

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT = "coverage-report.json"


@dataclass
class AssetCoverage:
    key: str
    symbol: str
    required: int
    covered: int
    missing_timestamps: List[int] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.covered >= self.required:
            return "complete"
        if self.covered > 0:
            return "partial"
        return "missing"

    @property
    def percentage(self) -> float:
        return self.covered / self.required * 100 if self.required else 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "symbol": self.symbol,
            "required": self.required,
            "covered": self.covered,
            "percentage": round(self.percentage, 2),
            "missing_timestamps": list(self.missing_timestamps),
        }


@dataclass
class CoverageReport:
    complete: List[AssetCoverage] = field(default_factory=list)
    partial: List[AssetCoverage] = field(default_factory=list)
    missing: List[AssetCoverage] = field(default_factory=list)

    def add(self, entry: AssetCoverage) -> None:
        getattr(self, entry.status).append(entry)

    @property
    def entries(self) -> List[AssetCoverage]:
        return self.complete + self.partial + self.missing

    def summary(self) -> Dict[str, Any]:
        required = sum(e.required for e in self.entries)
        covered = sum(e.covered for e in self.entries)
        return {
            "assets": len(self.entries),
            "complete": len(self.complete),
            "partial": len(self.partial),
            "missing": len(self.missing),
            "required_timestamps": required,
            "covered_timestamps": covered,
            "coverage_percentage": round(covered / required * 100, 2) if required else 100.0,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "complete": [e.to_dict() for e in self.complete],
            "partial": [e.to_dict() for e in self.partial],
            "missing": [e.to_dict() for e in self.missing],
        }


def _coverage(req: RequiredAsset, record: Optional[AssetPriceRecord]) -> AssetCoverage:
    missing = record.missing(req.timestamps) if record is not None else sorted(req.timestamps)
    return AssetCoverage(
        key=req.key,
        symbol=record.symbol if record is not None else "",
        required=len(req.timestamps),
        covered=len(req.timestamps) - len(missing),
        missing_timestamps=missing,
    )


def check_coverage(
    snapshot: AuctionSnapshot, records: Dict[str, AssetPriceRecord], reference_key: str = REFERENCE_ASSET
) -> CoverageReport:
    report = CoverageReport()
    reference = reference_requirement(snapshot, reference_key)
    if reference.timestamps:
        report.add(_coverage(reference, records.get(reference.key)))
    for req in extract_required_assets(snapshot):
        if req.key == reference.key:
            continue
        report.add(_coverage(req, records.get(req.key)))
    return report


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Report price coverage of every asset auctions reference.")
    parser.add_argument("--analysis-file", default=data_path("feeflow-analysis.json"))
    parser.add_argument("--prices-file", default=data_path("asset-prices.json"))
    parser.add_argument("--output", default=data_path(DEFAULT_OUTPUT))
    parser.add_argument("--reference-asset", default=REFERENCE_ASSET)
    parser.add_argument("--strict", action="store_true", help="exit 1 unless every asset is complete")
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def run(argv: Optional[Sequence[str]] = None) -> int:
    load_env()
    args = _parse_args(argv)
    configure_logging(args.log_level)

    snapshot = AuctionStore(args.analysis_file).load(required=True)
    records = PriceStore(args.prices_file).load(required=False)
    report = check_coverage(snapshot, records, args.reference_asset.lower())
    write_json(args.output, report.to_dict())

    summary = report.summary()
    logger.info(
        "%d assets: %d complete, %d partial, %d missing (%.2f%% of timestamps)",
        summary["assets"],
        summary["complete"],
        summary["partial"],
        summary["missing"],
        summary["coverage_percentage"],
    )
    for entry in report.partial + report.missing:
        logger.warning("%s %s: %d/%d", entry.status, entry.key, entry.covered, entry.required)
    if args.strict and (report.partial or report.missing):
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        return run(argv)
    except Exception as exc:
        logger.error("error: %s: %s", exc.__class__.__name__, exc)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
