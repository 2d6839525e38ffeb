import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Set

from feeflow.chains import split_asset_key
from feeflow.models import AssetMapping, AssetPriceRecord, AuctionSnapshot

logger = logging.getLogger(__name__)


class SnapshotError(RuntimeError):
    pass


def read_json(path: str, *, required: bool) -> Optional[Any]:
    if not os.path.exists(path):
        if required:
            raise SnapshotError(f"required file not found: {path}")
        return None
    try:
        with open(path) as f:
            return json.load(f)
    except json.JSONDecodeError as exc:
        raise SnapshotError(f"malformed JSON in {path}: {exc}") from exc


def write_json(path: str, payload: Any) -> None:
    """Rewrite the whole file; readers never observe a half-written snapshot."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory or ".")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(payload, f, indent=2)
            f.write("\n")
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


def _expect_object(payload: Any, path: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise SnapshotError(f"unexpected top-level shape in {path}: expected an object")
    return payload


class AuctionStore:
    def __init__(self, path: str) -> None:
        self.path = path

    def load(self, *, required: bool = True) -> AuctionSnapshot:
        payload = read_json(self.path, required=required)
        if payload is None:
            return AuctionSnapshot()
        data = _expect_object(payload, self.path)
        try:
            return AuctionSnapshot.from_dict(data)
        except (TypeError, ValueError, AttributeError) as exc:
            raise SnapshotError(f"invalid auction snapshot {self.path}: {exc}") from exc

    def save(self, snapshot: AuctionSnapshot) -> None:
        write_json(self.path, snapshot.to_dict())


class PriceStore:
    def __init__(self, path: str) -> None:
        self.path = path

    def load(self, *, required: bool = False) -> Dict[str, AssetPriceRecord]:
        payload = read_json(self.path, required=required)
        if payload is None:
            return {}
        data = _expect_object(payload, self.path)
        out: Dict[str, AssetPriceRecord] = {}
        for key, raw in data.items():
            if not isinstance(raw, dict):
                raise SnapshotError(f"invalid price record {key!r} in {self.path}")
            try:
                record = AssetPriceRecord.from_dict(raw)
                if not record.chain_id or not record.address:
                    record.chain_id, record.address = split_asset_key(key)
            except (TypeError, ValueError) as exc:
                raise SnapshotError(f"invalid price record {key!r} in {self.path}: {exc}") from exc
            # Older files may carry checksummed keys; index by the normalized key.
            existing = out.get(record.key)
            if existing is None:
                out[record.key] = record
                continue
            logger.warning("merging duplicate price records for %s in %s", record.key, self.path)
            for ts, px in record.prices.items():
                existing.prices.setdefault(ts, px)
            if not existing.symbol:
                existing.symbol = record.symbol
            if existing.decimals is None:
                existing.decimals = record.decimals
            if existing.provenance is None:
                existing.provenance = record.provenance
        return out

    def save(self, records: Dict[str, AssetPriceRecord]) -> None:
        write_json(self.path, {key: rec.to_dict() for key, rec in records.items()})


class MappingStore:
    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> Dict[str, AssetMapping]:
        payload = read_json(self.path, required=False)
        if payload is None:
            return {}
        data = _expect_object(payload, self.path)
        return {key: AssetMapping.from_dict(raw) for key, raw in data.items() if isinstance(raw, dict)}

    def save(self, mappings: Dict[str, AssetMapping]) -> None:
        write_json(self.path, {key: m.to_dict() for key, m in mappings.items()})


class FailedAssetStore:
    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> Set[str]:
        payload = read_json(self.path, required=False)
        if payload is None:
            return set()
        if not isinstance(payload, list):
            raise SnapshotError(f"unexpected top-level shape in {self.path}: expected a list")
        return {str(k) for k in payload}

    def save(self, failed: Iterable[str]) -> None:
        write_json(self.path, sorted(set(failed)))


@dataclass
class AssetBook:
    price_store: PriceStore
    mapping_store: MappingStore
    failed_store: FailedAssetStore
    records: Dict[str, AssetPriceRecord] = field(default_factory=dict)
    mappings: Dict[str, AssetMapping] = field(default_factory=dict)
    failed: Set[str] = field(default_factory=set)

    @classmethod
    def load(cls, prices_path: str, mappings_path: str, failed_path: str) -> "AssetBook":
        price_store = PriceStore(prices_path)
        mapping_store = MappingStore(mappings_path)
        failed_store = FailedAssetStore(failed_path)
        return cls(
            price_store=price_store,
            mapping_store=mapping_store,
            failed_store=failed_store,
            records=price_store.load(),
            mappings=mapping_store.load(),
            failed=failed_store.load(),
        )

    def save(self) -> None:
        self.price_store.save(self.records)
        self.mapping_store.save(self.mappings)
        self.failed_store.save(self.failed)
        logger.debug(
            "saved %d price records, %d mappings, %d failed assets",
            len(self.records),
            len(self.mappings),
            len(self.failed),
        )

    def record(self, key: str) -> Optional[AssetPriceRecord]:
        return self.records.get(key)

    def put(self, record: AssetPriceRecord) -> None:
        self.records[record.key] = record

    def mapping_for(self, key: str) -> Optional[AssetMapping]:
        for mapping in self.mappings.values():
            if mapping.includes(key):
                return mapping
        return None

    def mark_failed(self, key: str) -> None:
        self.failed.add(key)

    def clear_failed(self, key: str) -> None:
        self.failed.discard(key)
