import argparse
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import requests

from feeflow.chain_rpc import (
    TRANSFER_TOPIC,
    ChainRpc,
    RangeTooLarge,
    RpcError,
    RpcTimeout,
    hex_to_int,
    keccak_topic,
    parse_u256_words,
    topic_to_address,
)
from feeflow.chains import (
    configure_logging,
    data_path,
    discover_rpc_urls,
    load_env,
    load_production_chains,
    normalize_address,
    normalize_hex,
)
from feeflow.models import Auction, AuctionSnapshot, ChainAuctions, ReceivedAsset
from feeflow.snapshots import AuctionStore

logger = logging.getLogger(__name__)

BUY_TOPIC = keccak_topic("Buy(address,address,uint256)")

CHUNK_SIZES: Tuple[int, ...] = (10000, 2000, 1000)
LOG_TIMEOUT_S = 30.0
PAYMENT_DECIMALS = 18

DEFAULT_OUTPUT = "feeflow-analysis.json"


@dataclass(frozen=True)
class BuyEvent:
    tx_hash: str
    block_number: int
    log_index: int
    buyer: str
    assets_receiver: str
    payment_amount: int


@dataclass(frozen=True)
class ShareTransfer:
    vault: str
    shares: int


@dataclass
class ScanResult:
    events: List[BuyEvent] = field(default_factory=list)
    skipped: List[Tuple[int, int]] = field(default_factory=list)
    chunk_size: int = CHUNK_SIZES[0]


def _read_json_file(path: str) -> Dict[str, Any]:
    with open(path) as f:
        payload = json.load(f)
    if not isinstance(payload, dict):
        raise ValueError(f"unexpected schema: {path}")
    return payload


def load_chain_addresses(addresses_dir: str, chain_id: str) -> Optional[Dict[str, str]]:
    base = os.path.join(addresses_dir, str(chain_id))
    try:
        periphery = _read_json_file(os.path.join(base, "PeripheryAddresses.json"))
        tokens = _read_json_file(os.path.join(base, "TokenAddresses.json"))
        multisigs = _read_json_file(os.path.join(base, "MultisigAddresses.json"))
    except (OSError, ValueError) as exc:
        logger.warning("chain %s: failed to load addresses: %s", chain_id, exc)
        return None
    controller = normalize_address(periphery.get("feeFlowController"))
    if not controller:
        logger.warning("chain %s: no feeFlowController address", chain_id)
        return None
    return {
        "fee_flow_controller": controller,
        "eul_token": normalize_address(tokens.get("EUL")),
        "dao_multisig": normalize_address(multisigs.get("DAO")),
    }


def find_deployment_block(rpc: ChainRpc, address: str, latest: int) -> int:
    left, right = 0, int(latest)
    deployment = right
    while left <= right:
        mid = (left + right) // 2
        try:
            code = rpc.get_code(address, mid)
        except RpcError as exc:
            logger.debug("getCode at %d failed: %s", mid, exc)
            left = mid + 1
            continue
        if code and code != "0x":
            deployment = mid
            right = mid - 1
        else:
            left = mid + 1
    return deployment


def determine_search_range(
    rpc: ChainRpc, addresses: Dict[str, str], existing: Optional[ChainAuctions]
) -> Tuple[int, int]:
    latest = rpc.block_number()
    if existing is not None and existing.auctions:
        start = existing.last_block + 1
        logger.info("resuming from block %d", start)
    else:
        start = find_deployment_block(rpc, addresses["fee_flow_controller"], latest)
        logger.info("controller deployed at block %d", start)
    return start, latest


def decode_buy_event(log: Dict[str, Any]) -> BuyEvent:
    topics = [normalize_hex(t) for t in log.get("topics") or []]
    if len(topics) < 3 or topics[0] != BUY_TOPIC:
        raise ValueError("not a Buy log")
    words = parse_u256_words(str(log.get("data") or "0x"))
    if not words:
        raise ValueError("Buy log without payment amount")
    block = hex_to_int(log.get("blockNumber"))
    if block is None:
        raise ValueError("Buy log without block number")
    return BuyEvent(
        tx_hash=normalize_hex(log.get("transactionHash")),
        block_number=block,
        log_index=hex_to_int(log.get("logIndex")) or 0,
        buyer=topic_to_address(topics[1]),
        assets_receiver=topic_to_address(topics[2]),
        payment_amount=words[0],
    )


def scan_buy_events(
    rpc: ChainRpc,
    controller: str,
    from_block: int,
    to_block: int,
    *,
    chunk_sizes: Sequence[int] = CHUNK_SIZES,
    timeout_s: float = LOG_TIMEOUT_S,
) -> ScanResult:
    result = ScanResult(chunk_size=chunk_sizes[0])
    size_idx = 0
    start = from_block
    while start <= to_block:
        size = chunk_sizes[size_idx]
        end = min(start + size - 1, to_block)
        logger.debug("scanning blocks %d-%d", start, end)
        try:
            logs = rpc.get_logs(
                address=controller, topics=[BUY_TOPIC], from_block=start, to_block=end, timeout_s=timeout_s
            )
        except RangeTooLarge as exc:
            if size_idx < len(chunk_sizes) - 1:
                size_idx += 1
                result.chunk_size = chunk_sizes[size_idx]
                logger.warning("range too large (%s), reducing chunk size to %d", exc, result.chunk_size)
                continue
            logger.warning("blocks %d-%d still too large at %d blocks, skipping", start, end, size)
            result.skipped.append((start, end))
        except RpcTimeout:
            logger.warning("blocks %d-%d timed out after %ss, skipping", start, end, timeout_s)
            result.skipped.append((start, end))
        except RpcError as exc:
            logger.warning("blocks %d-%d failed, skipping: %s", start, end, exc)
            result.skipped.append((start, end))
        else:
            for log in logs:
                try:
                    result.events.append(decode_buy_event(log))
                except ValueError as exc:
                    logger.warning("undecodable log in blocks %d-%d: %s", start, end, exc)
            if logs:
                logger.info("blocks %d-%d: %d Buy events", start, end, len(logs))
        start = end + 1
    return result


def _transfer_parts(log: Dict[str, Any]) -> Optional[Tuple[str, str, str, int]]:
    topics = [normalize_hex(t) for t in log.get("topics") or []]
    # ERC721 transfers index the token id as a fourth topic.
    if len(topics) != 3 or topics[0] != TRANSFER_TOPIC:
        return None
    try:
        words = parse_u256_words(str(log.get("data") or "0x"))
    except ValueError:
        return None
    if not words:
        return None
    emitter = normalize_address(log.get("address"))
    return emitter, topic_to_address(topics[1]), topic_to_address(topics[2]), words[0]


def share_transfers(logs: Iterable[Dict[str, Any]], controller: str, receiver: str) -> List[ShareTransfer]:
    controller = normalize_address(controller)
    receiver = normalize_address(receiver)
    out: List[ShareTransfer] = []
    for log in logs:
        parts = _transfer_parts(log)
        if parts is None:
            continue
        emitter, src, dst, value = parts
        if emitter == controller:
            continue
        if src == controller and dst == receiver:
            out.append(ShareTransfer(vault=emitter, shares=value))
    return out


def payment_reconciled(logs: Iterable[Dict[str, Any]], token: str, buyer: str, amount: int) -> bool:
    token = normalize_address(token)
    buyer = normalize_address(buyer)
    for log in logs:
        parts = _transfer_parts(log)
        if parts is None:
            continue
        emitter, src, _dst, value = parts
        if emitter == token and src == buyer and value == amount:
            return True
    return False


def resolve_auction(rpc: ChainRpc, chain_id: str, event: BuyEvent, addresses: Dict[str, str]) -> Optional[Auction]:
    try:
        receipt = rpc.get_receipt(event.tx_hash)
    except RpcError as exc:
        logger.warning("chain %s: dropping %s, receipt unavailable: %s", chain_id, event.tx_hash, exc)
        return None
    if receipt is None:
        logger.warning("chain %s: dropping %s, no receipt", chain_id, event.tx_hash)
        return None
    logs = receipt.get("logs") or []

    token = addresses.get("eul_token")
    # A fully decayed auction pays nothing, so there is no transfer to match.
    if token and event.payment_amount and not payment_reconciled(logs, token, event.buyer, event.payment_amount):
        logger.warning("chain %s: dropping %s, no matching payment transfer", chain_id, event.tx_hash)
        return None

    try:
        timestamp = rpc.get_block_timestamp(event.block_number)
    except RpcError as exc:
        logger.warning("chain %s: dropping %s, block timestamp unavailable: %s", chain_id, event.tx_hash, exc)
        return None

    assets: List[ReceivedAsset] = []
    for transfer in share_transfers(logs, addresses["fee_flow_controller"], event.assets_receiver):
        try:
            amount = str(rpc.convert_to_assets(transfer.vault, transfer.shares, event.block_number))
            underlying = rpc.vault_asset(transfer.vault, event.block_number)
        except (RpcError, ValueError) as exc:
            logger.warning("chain %s: failed to convert shares of %s: %s", chain_id, transfer.vault, exc)
            amount, underlying = "0", ""
        assets.append(
            ReceivedAsset(
                vault=transfer.vault,
                underlying_asset=underlying,
                shares=str(transfer.shares),
                underlying_amount=amount,
            )
        )

    return Auction(
        chain_id=str(chain_id),
        tx_hash=event.tx_hash,
        block_number=event.block_number,
        timestamp=timestamp,
        payment_amount=str(event.payment_amount),
        payment_decimals=PAYMENT_DECIMALS,
        assets=assets,
    )


def merge_auctions(existing: Iterable[Auction], new: Iterable[Auction]) -> List[Auction]:
    by_tx: Dict[str, Auction] = {}
    for auction in existing:
        by_tx.setdefault(auction.tx_hash, auction)
    for auction in new:
        # Recorded auctions are immutable; a rescan never replaces them.
        by_tx.setdefault(auction.tx_hash, auction)
    return sorted(by_tx.values(), key=lambda a: (a.block_number, a.tx_hash))


def scrape_chain(
    rpc: ChainRpc,
    chain_id: str,
    addresses: Dict[str, str],
    existing: Optional[ChainAuctions] = None,
    *,
    chunk_sizes: Sequence[int] = CHUNK_SIZES,
) -> ChainAuctions:
    from_block, to_block = determine_search_range(rpc, addresses, existing)
    previous = list(existing.auctions) if existing is not None else []
    if from_block > to_block:
        logger.info("chain %s: no new blocks", chain_id)
        return ChainAuctions(chain_id=str(chain_id), addresses=dict(addresses), auctions=previous)

    scan = scan_buy_events(rpc, addresses["fee_flow_controller"], from_block, to_block, chunk_sizes=chunk_sizes)
    if scan.skipped:
        logger.warning("chain %s: %d chunks skipped", chain_id, len(scan.skipped))

    seen = set()
    new: List[Auction] = []
    for i, event in enumerate(scan.events, start=1):
        if event.tx_hash in seen:
            continue
        seen.add(event.tx_hash)
        logger.info("chain %s: auction %d/%d (block %d)", chain_id, i, len(scan.events), event.block_number)
        auction = resolve_auction(rpc, str(chain_id), event, addresses)
        if auction is not None:
            new.append(auction)

    merged = merge_auctions(previous, new)
    logger.info("chain %s: %d existing + %d new = %d auctions", chain_id, len(previous), len(new), len(merged))
    return ChainAuctions(chain_id=str(chain_id), addresses=dict(addresses), auctions=merged)


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Scrape fee-flow auction Buy events into a JSON snapshot.")
    parser.add_argument("chains", nargs="*", help="chain ids (default: resume file chains, else production chains)")
    parser.add_argument("--resume", default="", help="existing snapshot to extend")
    parser.add_argument("--output", default="", help="output snapshot (default: resume file or data dir)")
    parser.add_argument("--addresses-dir", default=os.environ.get("FEEFLOW_ADDRESSES_DIR", "addresses"))
    parser.add_argument("--chains-file", default=os.environ.get("FEEFLOW_CHAINS_FILE", "EulerChains.json"))
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def run(argv: Optional[Sequence[str]] = None) -> int:
    load_env()
    args = _parse_args(argv)
    configure_logging(args.log_level)

    snapshot = AuctionStore(args.resume).load(required=True) if args.resume else AuctionSnapshot()
    output = args.output or args.resume or data_path(DEFAULT_OUTPUT)

    chain_ids = [str(int(c)) for c in args.chains]
    if not chain_ids:
        chain_ids = list(snapshot.chains)
    if not chain_ids:
        if not os.path.exists(args.chains_file):
            logger.error("no chain ids given and chains file %s not found", args.chains_file)
            return 1
        chain_ids = load_production_chains(args.chains_file)
        logger.info("using production chains: %s", ", ".join(chain_ids))
    if not chain_ids:
        logger.error("no chains to scrape")
        return 1

    rpc_urls = discover_rpc_urls()
    session = requests.Session()
    store = AuctionStore(output)

    for chain_id in chain_ids:
        url = rpc_urls.get(chain_id)
        if not url:
            logger.warning("chain %s: no DEPLOYMENT_RPC_URL_%s configured, skipping", chain_id, chain_id)
            continue
        addresses = load_chain_addresses(args.addresses_dir, chain_id)
        if addresses is None:
            continue
        rpc = ChainRpc(url, session=session)
        try:
            chain = scrape_chain(rpc, chain_id, addresses, snapshot.chains.get(chain_id))
        except RpcError as exc:
            logger.error("chain %s failed: %s", chain_id, exc)
            continue
        snapshot.chains[chain_id] = chain
        store.save(snapshot)

    store.save(snapshot)
    summary = snapshot.global_summary()
    logger.info(
        "%d chains, %d auctions, %s raw payment total -> %s",
        summary["total_chains"],
        summary["total_auctions"],
        summary["total_payment"],
        output,
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
