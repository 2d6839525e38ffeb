import json

import pytest

from conftest import addr, make_auction, make_snapshot
from feeflow.analyze_auction_effectiveness import (
    MissingReferencePrice,
    analyze,
    analyze_auction,
    main,
    price_near,
    treasury_outcome,
)
from feeflow.chains import split_asset_key
from feeflow.collect_asset_prices import REFERENCE_ASSET
from feeflow.models import AssetPriceRecord
from feeflow.snapshots import AuctionStore, PriceStore

TOKEN = addr(100)
JAN = 1704067200
FEB = 1706745600


def reference_record(prices):
    chain_id, address = split_asset_key(REFERENCE_ASSET)
    return AssetPriceRecord(chain_id=chain_id, address=address, symbol="EUL", decimals=18, prices=prices)


def token_record(prices, decimals=6):
    return AssetPriceRecord(chain_id="1", address=TOKEN, symbol="USDC", decimals=decimals, prices=prices)


class TestPriceNear:
    def test_closest_within_window(self):
        record = token_record({1000: 1.0, 5000: 2.0})
        assert price_near(record, 4000) == 2.0
        assert price_near(record, 1000 - 21601) is None

    def test_tie_goes_to_earlier_point(self):
        record = token_record({1000: 1.0, 1000 + 21600: 2.0})
        assert price_near(record, 1000 + 10800) == 1.0

    def test_no_record(self):
        assert price_near(None, 1) is None


class TestAnalyzeAuction:
    def test_discount_when_payment_exceeds_received(self):
        auction = make_auction("1", 1, 10, JAN, payment=10**18, assets=[(TOKEN, str(95 * 10**6))])
        records = {REFERENCE_ASSET: reference_record({JAN: 100.0}), f"1:{TOKEN}": token_record({JAN: 1.0})}
        result = analyze_auction(auction, records)
        assert result["payment"]["usd_value"] == pytest.approx(100.0)
        assert result["total_received_usd"] == pytest.approx(95.0)
        assert result["discount"] == pytest.approx(-5.0)
        assert result["discount_percentage"] == pytest.approx(-5.263, abs=1e-3)
        assert result["treasury_outcome"] == "gain"
        assert result["assets_received"][0]["symbol"] == "USDC"

    def test_missing_reference_price(self):
        auction = make_auction("1", 1, 10, JAN)
        with pytest.raises(MissingReferencePrice):
            analyze_auction(auction, {})

    def test_unpriced_asset_omitted(self):
        auction = make_auction("1", 1, 10, JAN, assets=[(TOKEN, "5"), (addr(101), "7")])
        records = {REFERENCE_ASSET: reference_record({JAN: 1.0}), f"1:{TOKEN}": token_record({JAN: 2.0})}
        result = analyze_auction(auction, records)
        assert [a["address"] for a in result["assets_received"]] == [TOKEN]

    def test_nothing_received(self):
        auction = make_auction("1", 1, 10, JAN)
        result = analyze_auction(auction, {REFERENCE_ASSET: reference_record({JAN: 1.0})})
        assert result["discount_percentage"] == 0.0
        assert result["treasury_outcome"] == "gain"

    def test_outcomes(self):
        assert treasury_outcome(1.0) == "loss"
        assert treasury_outcome(-1.0) == "gain"
        assert treasury_outcome(0.0) == "neutral"


class TestAnalyze:
    def test_excluded_auction_recorded_once(self):
        snapshot = make_snapshot(make_auction("1", 1, 10, JAN), make_auction("1", 2, 20, FEB))
        out = analyze(snapshot, {REFERENCE_ASSET: reference_record({JAN: 1.0})})
        assert len(out["auctions"]) == 1
        errors = out["analysis"]["errors"]
        assert len(errors) == 1
        assert errors[0]["timestamp"] == FEB
        assert out["summary"]["auctions"] == 1

    def test_breakdowns(self):
        snapshot = make_snapshot(
            make_auction("1", 1, 10, JAN, payment=10**18, assets=[(TOKEN, str(3 * 10**6))]),
            make_auction("1", 2, 20, FEB, payment=10**18, assets=[(TOKEN, str(1 * 10**6))]),
            make_auction("8453", 3, 30, FEB, payment=2 * 10**18),
        )
        records = {
            REFERENCE_ASSET: reference_record({JAN: 2.0, FEB: 2.0}),
            f"1:{TOKEN}": token_record({JAN: 1.0, FEB: 1.0}),
        }
        out = analyze(snapshot, records)

        assert list(out["month_breakdown"]) == ["2024-01", "2024-02"]
        assert out["month_breakdown"]["2024-02"]["auctions"] == 2
        assert out["month_breakdown"]["2024-01"]["discount"] == pytest.approx(1.0)
        chains = out["summary"]["chain_breakdown"]
        assert list(chains) == ["1", "8453"]
        assert chains["8453"]["chain_name"] == "Base"
        assert chains["8453"]["payment_amount"] == str(2 * 10**18)
        token = out["asset_breakdown"][TOKEN]
        assert token["total_amount"] == str(4 * 10**6)
        assert token["appearances"] == 2
        assert token["chains"] == ["1"]
        assert out["summary"]["discount"] == pytest.approx(4.0 - 8.0)


class TestCommandLine:
    def test_writes_report(self, tmp_path):
        analysis = tmp_path / "feeflow-analysis.json"
        prices = tmp_path / "asset-prices.json"
        output = tmp_path / "report.json"
        AuctionStore(str(analysis)).save(make_snapshot(make_auction("1", 1, 10, JAN)))
        PriceStore(str(prices)).save({REFERENCE_ASSET: reference_record({JAN: 1.5})})

        code = main(["--analysis-file", str(analysis), "--prices-file", str(prices), "--output", str(output)])

        assert code == 0
        report = json.loads(output.read_text())
        assert report["summary"]["auctions"] == 1
        assert report["analysis"]["files"] == {
            "analysis_file": "feeflow-analysis.json",
            "prices_file": "asset-prices.json",
        }

    def test_missing_input_file(self, tmp_path):
        code = main(
            [
                "--analysis-file",
                str(tmp_path / "missing.json"),
                "--prices-file",
                str(tmp_path / "prices.json"),
                "--output",
                str(tmp_path / "out.json"),
            ]
        )
        assert code == 2
        assert not (tmp_path / "out.json").exists()
