import pytest

from feeflow.models import (
    AssetMapping,
    AssetPriceRecord,
    AuctionSnapshot,
    CrossChainAlias,
    Equivalent,
    ExternalSource,
    ManualSource,
    VaultDerived,
    mapping_key,
    provenance_from_dict,
)


class TestProvenance:
    @pytest.mark.parametrize(
        "source",
        [
            ExternalSource(identifier="coingecko:usd-coin", auto_detected=True),
            ManualSource(method="fixed", params={"price": 1.0}),
            CrossChainAlias(base_asset="1:0xabc"),
            VaultDerived(underlying_asset="1:0xdef"),
        ],
    )
    def test_variants_survive_serialization(self, source):
        assert provenance_from_dict(source.to_dict()) == source

    def test_unknown_kind_is_none(self):
        assert provenance_from_dict({"kind": "mystery"}) is None
        assert provenance_from_dict(None) is None


class TestManualFormulas:
    def test_fixed(self):
        assert ManualSource("fixed", {"price": 2.5}).price_at(123) == 2.5

    def test_linear_interpolates_and_clamps(self):
        source = ManualSource("linear", {"start_ts": 100, "start_price": 1.0, "end_ts": 200, "end_price": 3.0})
        assert source.price_at(150) == pytest.approx(2.0)
        assert source.price_at(50) == 1.0
        assert source.price_at(250) == 3.0

    def test_growth_compounds_per_period(self):
        source = ManualSource("growth", {"start_ts": 0, "start_price": 100.0, "rate": 0.1, "period_days": 1})
        assert source.price_at(2 * 86400) == pytest.approx(121.0)

    def test_individual_cannot_be_replayed(self):
        source = ManualSource("individual")
        assert not source.replayable
        assert source.price_at(1) is None


class TestRecords:
    def test_missing_and_covers(self):
        record = AssetPriceRecord(chain_id="1", address="0xabc", prices={100: 1.0, 200: 2.0})
        assert record.missing([100, 300, 300]) == [300]
        assert record.covers([100, 200])
        assert not record.covers([100, 300])

    def test_prices_keyed_by_string_on_disk(self):
        record = AssetPriceRecord(chain_id="1", address="0xabc", decimals=6, prices={200: 2.0, 100: 1.0})
        data = record.to_dict()
        assert list(data["prices"]) == ["100", "200"]
        assert AssetPriceRecord.from_dict(data).prices == {100: 1.0, 200: 2.0}

    def test_mapping_add_ignores_duplicates_and_base(self):
        mapping = AssetMapping(base_asset="1:0xabc")
        assert mapping.add(Equivalent("10:0xabc", "10"))
        assert not mapping.add(Equivalent("10:0xabc", "10"))
        assert not mapping.add(Equivalent("1:0xabc", "1"))
        assert mapping_key("0xABC") == "cross-chain:0xabc"

    def test_snapshot_requires_chain_object(self):
        with pytest.raises(ValueError):
            AuctionSnapshot.from_dict({"chains": ["1"]})
