import itertools
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import requests
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from feeflow.chains import ZERO_ADDRESS, normalize_address, normalize_hex

logger = logging.getLogger(__name__)

BlockRef = Union[int, str]


def keccak_topic(signature: str) -> str:
    return "0x" + keccak(text=signature).hex()


def function_selector(signature: str) -> str:
    return "0x" + keccak(text=signature)[:4].hex()


TRANSFER_TOPIC = keccak_topic("Transfer(address,address,uint256)")

SEL_ASSET = function_selector("asset()")
SEL_CONVERT_TO_ASSETS = function_selector("convertToAssets(uint256)")
SEL_SYMBOL = function_selector("symbol()")
SEL_DECIMALS = function_selector("decimals()")

_RANGE_HINTS = (
    "413",
    "too large",
    "block range",
    "range is too",
    "range too",
    "more than",
    "response size",
    "exceed maximum",
    "max range",
)

_RATE_LIMIT_HINTS = ("rate limit", "too many requests", "max calls per sec", "request limit reached")


class RpcError(RuntimeError):
    pass


class RpcTimeout(RpcError):
    pass


class RangeTooLarge(RpcError):
    pass


def hex_to_int(value: Any) -> Optional[int]:
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        return None
    v = value.strip().lower()
    if not v:
        return None
    if v.startswith("0x"):
        return int(v, 16) if len(v) > 2 else 0
    if v.isdigit():
        return int(v, 10)
    return None


def block_tag(block: BlockRef) -> str:
    if isinstance(block, int):
        if block < 0:
            raise ValueError("negative block number")
        return hex(block)
    return block


def topic_to_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    return "0x" + topic[-40:]


def parse_u256_words(data_hex: str) -> List[int]:
    if data_hex.startswith("0x"):
        data_hex = data_hex[2:]
    if len(data_hex) % 64 != 0:
        raise ValueError(f"unexpected data length {len(data_hex)}")
    return [int(data_hex[i : i + 64], 16) for i in range(0, len(data_hex), 64)]


def word_to_address(word: int) -> str:
    return "0x" + f"{word:064x}"[-40:]


def encode_uint256(value: int) -> str:
    if value < 0:
        raise ValueError("negative uint256")
    return f"{int(value):064x}"


def decode_string(data_hex: str) -> str:
    data = normalize_hex(data_hex)
    raw = bytes.fromhex(data[2:]) if data else b""
    if not raw:
        return ""
    try:
        return str(abi_decode(["string"], raw)[0])
    except (DecodingError, UnicodeDecodeError, ValueError, OverflowError):
        # Some older tokens return bytes32 instead of string.
        return raw[:32].rstrip(b"\x00").decode("utf-8", errors="ignore")


def _message_has(message: str, hints: Sequence[str]) -> bool:
    hay = message.lower()
    return any(h in hay for h in hints)


class ChainRpc:
    def __init__(
        self,
        url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout_s: float = 30.0,
        max_retries: int = 3,
        backoff_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.url = url
        self.session = session or requests.Session()
        self.timeout_s = timeout_s
        self.max_retries = max(1, int(max_retries))
        self.backoff_s = backoff_s
        self._sleep = sleep
        self._ids = itertools.count(1)

    def _backoff(self, attempt: int, reason: Any) -> None:
        delay = self.backoff_s * attempt
        logger.debug("rpc attempt %d/%d failed (%s), retrying in %.1fs", attempt, self.max_retries, reason, delay)
        if delay > 0:
            self._sleep(delay)

    def request(self, method: str, params: Sequence[Any], *, timeout_s: Optional[float] = None) -> Any:
        timeout = self.timeout_s if timeout_s is None else timeout_s
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}

        last_exc: Optional[Exception] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = self.session.post(self.url, json=payload, timeout=timeout)
            except requests.Timeout as exc:
                raise RpcTimeout(f"{method} timed out after {timeout}s") from exc
            except requests.RequestException as exc:
                last_exc = exc
                if attempt < self.max_retries:
                    self._backoff(attempt, last_exc)
                    continue
                raise RpcError(f"{method} failed: {exc}") from exc

            if resp.status_code == 413:
                raise RangeTooLarge(f"{method}: HTTP 413 (request too large)")
            if resp.status_code == 429 or resp.status_code >= 500:
                last_exc = RpcError(f"{method}: HTTP {resp.status_code}")
                if attempt < self.max_retries:
                    self._backoff(attempt, last_exc)
                    continue
                raise last_exc
            if resp.status_code >= 400:
                raise RpcError(f"{method}: HTTP {resp.status_code}: {resp.text[:200]}")

            try:
                body = resp.json()
            except ValueError as exc:
                raise RpcError(f"{method}: invalid JSON response") from exc
            if not isinstance(body, dict):
                raise RpcError(f"{method}: unexpected response type")

            err = body.get("error")
            if err:
                message = str(err.get("message", err)) if isinstance(err, dict) else str(err)
                if _message_has(message, _RATE_LIMIT_HINTS) and attempt < self.max_retries:
                    last_exc = RpcError(f"{method}: {message}")
                    self._backoff(attempt, last_exc)
                    continue
                if _message_has(message, _RANGE_HINTS):
                    raise RangeTooLarge(f"{method}: {message}")
                raise RpcError(f"{method}: {message}")
            return body.get("result")

        raise RpcError(f"{method} failed") from last_exc

    def block_number(self) -> int:
        value = hex_to_int(self.request("eth_blockNumber", []))
        if value is None:
            raise RpcError("eth_blockNumber returned no result")
        return value

    def get_code(self, address: str, block: BlockRef = "latest") -> str:
        result = self.request("eth_getCode", [normalize_address(address), block_tag(block)])
        return normalize_hex(result) or "0x"

    def get_logs(
        self,
        *,
        address: str,
        topics: Sequence[Optional[str]],
        from_block: int,
        to_block: int,
        timeout_s: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        params = {
            "address": normalize_address(address),
            "topics": list(topics),
            "fromBlock": block_tag(from_block),
            "toBlock": block_tag(to_block),
        }
        result = self.request("eth_getLogs", [params], timeout_s=timeout_s)
        if not isinstance(result, list):
            raise RpcError("eth_getLogs returned a non-list result")
        return result

    def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        result = self.request("eth_getTransactionReceipt", [normalize_hex(tx_hash)])
        return result if isinstance(result, dict) else None

    def get_block_timestamp(self, block: BlockRef) -> int:
        result = self.request("eth_getBlockByNumber", [block_tag(block), False])
        if not isinstance(result, dict):
            raise RpcError(f"block {block} not found")
        ts = hex_to_int(result.get("timestamp"))
        if ts is None:
            raise RpcError(f"block {block} has no timestamp")
        return ts

    def call(self, to: str, data: str, block: BlockRef = "latest", *, timeout_s: Optional[float] = None) -> str:
        params = [{"to": normalize_address(to), "data": data}, block_tag(block)]
        result = normalize_hex(self.request("eth_call", params, timeout_s=timeout_s))
        if not result or result == "0x":
            raise RpcError(f"eth_call to {to} returned no data")
        return result

    def convert_to_assets(
        self, vault: str, shares: int, block: BlockRef = "latest", *, timeout_s: Optional[float] = None
    ) -> int:
        data = SEL_CONVERT_TO_ASSETS + encode_uint256(shares)
        words = parse_u256_words(self.call(vault, data, block, timeout_s=timeout_s))
        return words[0]

    def vault_asset(self, vault: str, block: BlockRef = "latest", *, timeout_s: Optional[float] = None) -> str:
        words = parse_u256_words(self.call(vault, SEL_ASSET, block, timeout_s=timeout_s))
        return word_to_address(words[0])

    def erc20_symbol(self, token: str, *, timeout_s: Optional[float] = None) -> str:
        return decode_string(self.call(token, SEL_SYMBOL, timeout_s=timeout_s))

    def erc20_decimals(self, token: str, *, timeout_s: Optional[float] = None) -> int:
        words = parse_u256_words(self.call(token, SEL_DECIMALS, timeout_s=timeout_s))
        decimals = words[0]
        if decimals > 255:
            raise RpcError(f"implausible decimals {decimals} for {token}")
        return decimals


def is_zero_address(address: str) -> bool:
    return normalize_address(address) in ("", ZERO_ADDRESS)
