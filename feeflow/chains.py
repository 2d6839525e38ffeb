import json
import logging
import os
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from dotenv import load_dotenv


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
NATIVE_SENTINEL = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"

RPC_ENV_PATTERN = re.compile(r"^DEPLOYMENT_RPC_URL_(\d+)$")

DEFAULT_DATA_DIR = "data"

CHAIN_NAMES: Dict[str, str] = {
    "1": "Ethereum",
    "10": "Optimism",
    "56": "BSC",
    "130": "Unichain",
    "137": "Polygon",
    "146": "Sonic",
    "239": "TAC",
    "1923": "Swellchain",
    "8453": "Base",
    "42161": "Arbitrum",
    "43114": "Avalanche",
    "59144": "Linea",
    "60808": "BOB",
    "80094": "Berachain",
}

# DefiLlama chain slugs (coins API), where they differ from the display name.
LLAMA_CHAIN_SLUGS: Dict[str, str] = {
    "1": "ethereum",
    "10": "optimism",
    "56": "bsc",
    "130": "unichain",
    "137": "polygon",
    "146": "sonic",
    "239": "tac",
    "1923": "swellchain",
    "8453": "base",
    "42161": "arbitrum",
    "43114": "avax",
    "59144": "linea",
    "60808": "bob",
    "80094": "berachain",
}

NATIVE_COIN_IDS: Dict[str, str] = {
    "1": "coingecko:ethereum",
    "10": "coingecko:ethereum",
    "56": "coingecko:binancecoin",
    "130": "coingecko:ethereum",
    "137": "coingecko:matic-network",
    "146": "coingecko:sonic-3",
    "1923": "coingecko:ethereum",
    "8453": "coingecko:ethereum",
    "42161": "coingecko:ethereum",
    "43114": "coingecko:avalanche-2",
    "59144": "coingecko:ethereum",
    "60808": "coingecko:ethereum",
    "80094": "coingecko:berachain-bera",
}


def normalize_hex(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    v = value.strip().lower()
    if not v:
        return ""
    if not v.startswith("0x"):
        v = "0x" + v
    return v


def normalize_address(value: Any) -> str:
    return normalize_hex(value)


def asset_key(chain_id: Any, address: str) -> str:
    return f"{chain_id}:{normalize_address(address)}"


def split_asset_key(key: str) -> Tuple[str, str]:
    chain_id, sep, address = key.partition(":")
    if not sep or not chain_id or not address:
        raise ValueError(f"invalid asset key: {key!r} (expected chainId:address)")
    return chain_id, normalize_address(address)


def chain_name(chain_id: Any) -> str:
    return CHAIN_NAMES.get(str(chain_id), f"Chain {chain_id}")


def llama_chain_slug(chain_id: Any) -> str:
    cid = str(chain_id)
    return LLAMA_CHAIN_SLUGS.get(cid) or chain_name(cid).lower()


def is_native_asset(address: str) -> bool:
    return normalize_address(address) in (ZERO_ADDRESS, NATIVE_SENTINEL)


def native_coin_id(chain_id: Any) -> str:
    cid = str(chain_id)
    return NATIVE_COIN_IDS.get(cid) or f"coingecko:{chain_name(cid).lower()}"


def load_env(path: Optional[str] = None) -> None:
    load_dotenv(dotenv_path=path, override=False)


def discover_rpc_urls(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = os.environ if environ is None else environ
    out: Dict[str, str] = {}
    for name, value in env.items():
        match = RPC_ENV_PATTERN.match(name)
        if match and value and value.strip():
            out[str(int(match.group(1)))] = value.strip()
    return out


def rpc_url(chain_id: Any, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    return discover_rpc_urls(environ).get(str(chain_id))


def data_path(filename: str, environ: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    base = env.get("FEEFLOW_DATA_DIR") or DEFAULT_DATA_DIR
    return os.path.join(base, filename)


def load_production_chains(path: str) -> List[str]:
    with open(path) as f:
        payload = json.load(f)
    if not isinstance(payload, list):
        raise RuntimeError(f"unexpected chains manifest schema: {path}")
    out: List[str] = []
    for entry in payload:
        if not isinstance(entry, dict) or entry.get("status") != "production":
            continue
        chain_id = entry.get("chainId")
        if chain_id is None:
            continue
        out.append(str(chain_id))
    return out


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)
