import json

import pytest

from conftest import FakeRpc, addr, make_auction, topic, transfer_log, word
from feeflow import scrape_auction_logs
from feeflow.chain_rpc import TRANSFER_TOPIC, RangeTooLarge, RpcTimeout
from feeflow.scrape_auction_logs import (
    BUY_TOPIC,
    decode_buy_event,
    find_deployment_block,
    load_chain_addresses,
    main,
    merge_auctions,
    resolve_auction,
    scan_buy_events,
    scrape_chain,
    share_transfers,
)

CONTROLLER = addr(1)
EUL = addr(2)
BUYER = addr(3)
RECEIVER = addr(4)
VAULT = addr(5)
UNDERLYING = addr(6)

ADDRESSES = {"fee_flow_controller": CONTROLLER, "eul_token": EUL, "dao_multisig": addr(7)}


def buy_log(block, tx, amount=10**18, log_index=0):
    return {
        "address": CONTROLLER,
        "topics": [BUY_TOPIC, topic(BUYER), topic(RECEIVER)],
        "data": "0x" + word(amount),
        "blockNumber": hex(block),
        "transactionHash": "0x" + f"{tx:064x}",
        "logIndex": hex(log_index),
    }


def seed_auction(rpc, block, tx, *, amount=10**18, shares=1000, paid=None):
    rpc.logs.append(buy_log(block, tx, amount))
    rpc.timestamps[block] = 1_700_000_000 + block
    rpc.receipts["0x" + f"{tx:064x}"] = {
        "logs": [
            transfer_log(EUL, BUYER, addr(7), amount if paid is None else paid),
            transfer_log(VAULT, CONTROLLER, RECEIVER, shares),
        ]
    }


@pytest.fixture
def rpc():
    fake = FakeRpc()
    fake.latest = 100
    fake.deployed_at = 10
    fake.vault_assets[VAULT] = UNDERLYING
    fake.rates[VAULT] = lambda shares, block: shares * 2
    return fake


class TestDeployment:
    def test_binary_search_finds_first_block_with_code(self, rpc):
        rpc.latest = 1000
        rpc.deployed_at = 437
        assert find_deployment_block(rpc, CONTROLLER, rpc.latest) == 437


class TestScanning:
    def test_chunk_size_shrinks_and_stays_reduced(self, rpc):
        rpc.get_logs_hook = lambda lo, hi: RangeTooLarge("too many") if hi - lo + 1 > 2000 else None
        result = scan_buy_events(rpc, CONTROLLER, 0, 9999)
        ranges = [c[1:] for c in rpc.calls if c[0] == "get_logs"]
        assert ranges == [(0, 9999), (0, 1999), (2000, 3999), (4000, 5999), (6000, 7999), (8000, 9999)]
        assert result.chunk_size == 2000
        assert result.skipped == []

    def test_chunk_skipped_at_smallest_size(self, rpc):
        rpc.get_logs_hook = lambda lo, hi: RangeTooLarge("too many")
        result = scan_buy_events(rpc, CONTROLLER, 0, 2999)
        assert result.skipped == [(0, 999), (1000, 1999), (2000, 2999)]
        assert result.chunk_size == 1000

    def test_timed_out_chunk_skipped(self, rpc):
        rpc.logs.append(buy_log(15, 1))
        rpc.get_logs_hook = lambda lo, hi: RpcTimeout("slow") if lo == 0 else None
        result = scan_buy_events(rpc, CONTROLLER, 0, 19, chunk_sizes=(10,))
        assert result.skipped == [(0, 9)]
        assert [e.block_number for e in result.events] == [15]

    def test_decode_buy_event(self):
        event = decode_buy_event(buy_log(0x20, 7, amount=5, log_index=3))
        assert event.block_number == 32
        assert event.log_index == 3
        assert event.buyer == BUYER
        assert event.assets_receiver == RECEIVER
        assert event.payment_amount == 5

    def test_decode_rejects_other_topics(self):
        log = buy_log(1, 1)
        log["topics"][0] = TRANSFER_TOPIC
        with pytest.raises(ValueError):
            decode_buy_event(log)


class TestResolve:
    def test_reconciled_auction(self, rpc):
        seed_auction(rpc, 50, 1, shares=1000)
        event = decode_buy_event(rpc.logs[0])
        auction = resolve_auction(rpc, "1", event, ADDRESSES)
        assert auction.auction_id == "1:" + event.tx_hash
        assert auction.timestamp == 1_700_000_050
        assert auction.payment_amount == str(10**18)
        assert len(auction.assets) == 1
        asset = auction.assets[0]
        assert asset.vault == VAULT
        assert asset.underlying_asset == UNDERLYING
        assert asset.shares == "1000"
        assert asset.underlying_amount == "2000"
        assert ("convert_to_assets", VAULT, 1000, 50) in rpc.calls

    def test_payment_mismatch_drops_auction(self, rpc):
        seed_auction(rpc, 50, 1, paid=1)
        assert resolve_auction(rpc, "1", decode_buy_event(rpc.logs[0]), ADDRESSES) is None

    def test_zero_payment_auction_kept_without_transfer(self, rpc):
        rpc.logs.append(buy_log(50, 1, amount=0))
        rpc.timestamps[50] = 1_700_000_050
        rpc.receipts["0x" + f"{1:064x}"] = {"logs": [transfer_log(VAULT, CONTROLLER, RECEIVER, 1000)]}
        auction = resolve_auction(rpc, "1", decode_buy_event(rpc.logs[0]), ADDRESSES)
        assert auction.payment_amount == "0"
        assert [a.shares for a in auction.assets] == ["1000"]

    def test_missing_receipt_drops_auction(self, rpc):
        rpc.logs.append(buy_log(50, 1))
        assert resolve_auction(rpc, "1", decode_buy_event(rpc.logs[0]), ADDRESSES) is None

    def test_failed_conversion_keeps_asset(self, rpc):
        seed_auction(rpc, 50, 1)
        del rpc.rates[VAULT]
        auction = resolve_auction(rpc, "1", decode_buy_event(rpc.logs[0]), ADDRESSES)
        assert auction.assets[0].underlying_amount == "0"
        assert auction.assets[0].underlying_asset == ""

    def test_share_transfers_ignore_nft_and_controller_logs(self):
        nft = transfer_log(addr(8), CONTROLLER, RECEIVER, 1)
        nft["topics"].append(topic(addr(9)))
        logs = [
            nft,
            transfer_log(CONTROLLER, CONTROLLER, RECEIVER, 5),
            transfer_log(VAULT, CONTROLLER, addr(9), 5),
            transfer_log(VAULT, CONTROLLER, RECEIVER, 6),
        ]
        transfers = share_transfers(logs, CONTROLLER, RECEIVER)
        assert [(t.vault, t.shares) for t in transfers] == [(VAULT, 6)]


class TestScrapeChain:
    def test_first_run_and_idempotent_rerun(self, rpc):
        seed_auction(rpc, 50, 2)
        seed_auction(rpc, 30, 1)
        chain = scrape_chain(rpc, "1", ADDRESSES)
        assert [a.block_number for a in chain.auctions] == [30, 50]
        assert chain.addresses == ADDRESSES

        rpc.calls.clear()
        again = scrape_chain(rpc, "1", ADDRESSES, chain)
        assert again.auctions == chain.auctions
        assert [c for c in rpc.calls if c[0] == "get_logs"] == [("get_logs", 51, 100)]

    def test_resume_scans_only_new_blocks(self, rpc):
        seed_auction(rpc, 30, 1)
        chain = scrape_chain(rpc, "1", ADDRESSES)
        seed_auction(rpc, 120, 3)
        rpc.latest = 150
        rpc.calls.clear()
        resumed = scrape_chain(rpc, "1", ADDRESSES, chain)
        assert [c for c in rpc.calls if c[0] == "get_logs"] == [("get_logs", 31, 150)]
        assert [a.block_number for a in resumed.auctions] == [30, 120]

    def test_merge_keeps_existing_and_sorts(self):
        old = make_auction("1", 1, 20, 100)
        replacement = make_auction("1", 1, 20, 999)
        new = make_auction("1", 2, 10, 50)
        merged = merge_auctions([old], [replacement, new])
        assert merged == [new, old]


class TestConfiguration:
    def test_load_chain_addresses(self, tmp_path):
        base = tmp_path / "1"
        base.mkdir()
        (base / "PeripheryAddresses.json").write_text(json.dumps({"feeFlowController": CONTROLLER.upper()}))
        (base / "TokenAddresses.json").write_text(json.dumps({"EUL": EUL}))
        (base / "MultisigAddresses.json").write_text(json.dumps({"DAO": addr(7)}))
        loaded = load_chain_addresses(str(tmp_path), "1")
        assert loaded["fee_flow_controller"] == CONTROLLER
        assert loaded["eul_token"] == EUL

    def test_missing_addresses(self, tmp_path):
        assert load_chain_addresses(str(tmp_path), "1") is None

    def test_main_reports_missing_resume_file(self, tmp_path):
        assert main([str(1), "--resume", str(tmp_path / "missing.json")]) == 2

    def test_env_file_settings_feed_defaults(self, tmp_path, monkeypatch, caplog):
        chains_file = str(tmp_path / "custom-chains.json")
        monkeypatch.delenv("FEEFLOW_CHAINS_FILE", raising=False)
        monkeypatch.setattr(
            scrape_auction_logs, "load_env", lambda: monkeypatch.setenv("FEEFLOW_CHAINS_FILE", chains_file)
        )
        assert main([]) == 1
        assert chains_file in caplog.text
