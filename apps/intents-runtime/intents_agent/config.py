"""Runtime configuration loaded from the environment and an optional chain config file."""

from __future__ import annotations

import json
import os
import pathlib
import re
from dataclasses import dataclass
from typing import Any, Mapping

from .errors import ConfigError

DEFAULT_CONTRACT_ADDRESS = "0x1e00cE4800dE0D0000640070006dfc5F93dD0ff9"
NATIVE_TOKEN_SENTINEL = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"
MAX_UINT256 = 2**256 - 1

DEFAULT_EXPLORER_BASE_URL = "https://basescan.org"
DEFAULT_EXPLORER_NAME = "BaseScan"
DEFAULT_PREVIEW_SIGNATURE = "previewCommand(string)(bytes32,uint256,uint256,address,address,address)"
DEFAULT_PREVIEW_FIELDS = ("action", "amount", "amountToTransfer", "token", "tokenOut", "recipient")
COMMAND_SIGNATURE = "command(string)"
ALLOWANCE_SIGNATURE = "allowance(address,address)(uint256)"
APPROVE_SIGNATURE = "approve(address,uint256)(bool)"

DEFAULT_CALL_TIMEOUT_SEC = 30
DEFAULT_SEND_TIMEOUT_SEC = 30
DEFAULT_RECEIPT_TIMEOUT_SEC = 90


def is_hex_address(value: str) -> bool:
    return bool(re.fullmatch(r"0x[a-fA-F0-9]{40}", value))


def default_app_dir(environ: Mapping[str, str] | None = None) -> pathlib.Path:
    env = os.environ if environ is None else environ
    return pathlib.Path(env.get("INTENTS_AGENT_HOME") or str(pathlib.Path.home() / ".intents-agent"))


@dataclass(frozen=True)
class RuntimeConfig:
    rpc_url: str
    contract_address: str = DEFAULT_CONTRACT_ADDRESS
    native_token: str = NATIVE_TOKEN_SENTINEL
    explorer_base_url: str = DEFAULT_EXPLORER_BASE_URL
    explorer_name: str = DEFAULT_EXPLORER_NAME
    preview_signature: str = DEFAULT_PREVIEW_SIGNATURE
    preview_fields: tuple[str, ...] = DEFAULT_PREVIEW_FIELDS
    call_timeout_sec: int = DEFAULT_CALL_TIMEOUT_SEC
    send_timeout_sec: int = DEFAULT_SEND_TIMEOUT_SEC
    receipt_timeout_sec: int = DEFAULT_RECEIPT_TIMEOUT_SEC
    receipt_confirmations: int = 1
    cast_bin: str | None = None


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    if not re.fullmatch(r"[0-9]+", raw):
        raise ConfigError(f"{name} must be an integer.")
    value = int(raw)
    if value < 1:
        raise ConfigError(f"{name} must be >= 1.")
    return value


def _read_chain_config(path: pathlib.Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Chain config not found at '{path}'.")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ConfigError(f"Chain config '{path}' is not valid JSON.") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Chain config '{path}' must be a JSON object.")
    return data


def _chain_config_rpc_url(cfg: dict[str, Any]) -> str | None:
    rpc = cfg.get("rpc")
    if not isinstance(rpc, dict):
        return None
    for candidate in [rpc.get("primary"), rpc.get("fallback")]:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def _parse_preview_fields(raw: str) -> tuple[str, ...]:
    fields = tuple(part.strip() for part in raw.split(",") if part.strip())
    if not fields:
        raise ConfigError("INTENTS_PREVIEW_FIELDS must list at least one field name.")
    if len(set(fields)) != len(fields):
        raise ConfigError("INTENTS_PREVIEW_FIELDS must not repeat field names.")
    for required in ("amount", "token"):
        if required not in fields:
            raise ConfigError(f"INTENTS_PREVIEW_FIELDS must include '{required}'.")
    return fields


def load_config(environ: Mapping[str, str] | None = None) -> RuntimeConfig:
    """Build a RuntimeConfig from environment variables.

    When INTENTS_CHAIN_CONFIG points at a chain config JSON file its rpc,
    explorer and contract entries are used as defaults; explicit environment
    variables always win.
    """
    env = os.environ if environ is None else environ

    chain_cfg: dict[str, Any] = {}
    chain_cfg_path = (env.get("INTENTS_CHAIN_CONFIG") or "").strip()
    if chain_cfg_path:
        chain_cfg = _read_chain_config(pathlib.Path(chain_cfg_path).expanduser())
    explorer_cfg = chain_cfg.get("explorer") if isinstance(chain_cfg.get("explorer"), dict) else {}
    contracts_cfg = chain_cfg.get("contracts") if isinstance(chain_cfg.get("contracts"), dict) else {}

    rpc_url = (env.get("INTENTS_RPC_URL") or "").strip() or _chain_config_rpc_url(chain_cfg)
    if not rpc_url:
        raise ConfigError("INTENTS_RPC_URL is not set and no chain config rpc URL is available.")

    contract_address = (
        (env.get("INTENTS_CONTRACT_ADDRESS") or "").strip()
        or str(contracts_cfg.get("intentsEngine") or "").strip()
        or DEFAULT_CONTRACT_ADDRESS
    )
    if not is_hex_address(contract_address):
        raise ConfigError(f"Contract address '{contract_address}' is not a valid 0x address.")

    native_token = (env.get("INTENTS_NATIVE_TOKEN") or "").strip() or NATIVE_TOKEN_SENTINEL
    if not is_hex_address(native_token):
        raise ConfigError(f"Native token sentinel '{native_token}' is not a valid 0x address.")

    explorer_base_url = (
        (env.get("INTENTS_EXPLORER_BASE_URL") or "").strip()
        or str(explorer_cfg.get("baseUrl") or "").strip()
        or DEFAULT_EXPLORER_BASE_URL
    )
    if not re.match(r"^https?://", explorer_base_url):
        raise ConfigError("Explorer base URL must start with http:// or https://.")
    explorer_name = (
        (env.get("INTENTS_EXPLORER_NAME") or "").strip()
        or str(explorer_cfg.get("name") or "").strip()
        or DEFAULT_EXPLORER_NAME
    )

    preview_signature = (env.get("INTENTS_PREVIEW_SIGNATURE") or "").strip() or DEFAULT_PREVIEW_SIGNATURE
    raw_fields = (env.get("INTENTS_PREVIEW_FIELDS") or "").strip()
    preview_fields = _parse_preview_fields(raw_fields) if raw_fields else DEFAULT_PREVIEW_FIELDS

    cast_bin = (env.get("INTENTS_CAST_BIN") or "").strip() or None

    return RuntimeConfig(
        rpc_url=rpc_url,
        contract_address=contract_address,
        native_token=native_token,
        explorer_base_url=explorer_base_url,
        explorer_name=explorer_name,
        preview_signature=preview_signature,
        preview_fields=preview_fields,
        call_timeout_sec=_env_int(env, "INTENTS_CAST_CALL_TIMEOUT_SEC", DEFAULT_CALL_TIMEOUT_SEC),
        send_timeout_sec=_env_int(env, "INTENTS_CAST_SEND_TIMEOUT_SEC", DEFAULT_SEND_TIMEOUT_SEC),
        receipt_timeout_sec=_env_int(env, "INTENTS_CAST_RECEIPT_TIMEOUT_SEC", DEFAULT_RECEIPT_TIMEOUT_SEC),
        receipt_confirmations=_env_int(env, "INTENTS_RECEIPT_CONFIRMATIONS", 1),
        cast_bin=cast_bin,
    )
