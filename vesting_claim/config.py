import os
from dataclasses import dataclass
from typing import Mapping, Optional

import yaml
from algosdk import encoding
from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_ORACLE_TIMEOUT = 30.0
DEFAULT_TOKEN_DECIMALS = 6


@dataclass(frozen=True)
class NetworkConfig:
    name: str
    algod_server: str
    algod_token: str = ""


@dataclass(frozen=True)
class Config:
    oracle_url: str
    entry_id: str
    access_token: str
    kernel_id: int
    claim_network: NetworkConfig
    registry_network: NetworkConfig
    token_app_id: int
    claim_authority_app_id: int
    registry_app_id: int
    authority_address: str
    oracle_timeout: float = DEFAULT_ORACLE_TIMEOUT
    token_decimals: int = DEFAULT_TOKEN_DECIMALS
    # further token applications the claim authority handles besides token_app_id
    extra_token_app_ids: tuple = ()
    abi_path: Optional[str] = None


def GetEnv(values: Mapping, name: str, default=None, required: bool = True):
    if name in values and values[name] not in (None, ""):
        return values[name]
    if default is not None or not required:
        return default
    raise ConfigError(f"missing required setting {name}")


def _as_int(name: str, value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc


def load_config(path: Optional[str] = None, environ: Optional[Mapping] = None) -> Config:
    """Load settings once: YAML file defaults, then .env, then the environment."""
    values = {}
    if path is not None:
        try:
            with open(path) as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"cannot read config file {path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError(f"config file {path} must contain a mapping")
        values.update({str(k).upper(): v for k, v in loaded.items()})

    if environ is None:
        load_dotenv()
        environ = os.environ
    values.update({k: v for k, v in environ.items() if v != ""})

    authority_address = GetEnv(values, "TOKEN_AUTHORITY_ADDRESS")
    if not encoding.is_valid_address(authority_address):
        raise ConfigError(f"TOKEN_AUTHORITY_ADDRESS {authority_address!r} is not a valid address")

    try:
        oracle_timeout = float(GetEnv(values, "ORACLE_TIMEOUT", DEFAULT_ORACLE_TIMEOUT))
    except (TypeError, ValueError) as exc:
        raise ConfigError("ORACLE_TIMEOUT must be a number of seconds") from exc
    if oracle_timeout <= 0:
        raise ConfigError("ORACLE_TIMEOUT must be positive")

    # comma separated in the environment, a list in YAML
    extra_ids = GetEnv(values, "EXTRA_TOKEN_APP_IDS", "")
    if not isinstance(extra_ids, (list, tuple)):
        extra_ids = str(extra_ids).split(",")
    extra_token_app_ids = tuple(_as_int("EXTRA_TOKEN_APP_IDS", part) for part in extra_ids if str(part).strip())

    return Config(
        oracle_url=GetEnv(values, "ORACLE_URL"),
        entry_id=str(GetEnv(values, "ORACLE_ENTRY_ID")),
        access_token=str(GetEnv(values, "ORACLE_ACCESS_TOKEN")),
        kernel_id=_as_int("VESTING_KERNEL_ID", GetEnv(values, "VESTING_KERNEL_ID")),
        claim_network=NetworkConfig(
            name="claim",
            algod_server=GetEnv(values, "CLAIM_ALGOD_SERVER"),
            algod_token=GetEnv(values, "CLAIM_ALGOD_TOKEN", ""),
        ),
        registry_network=NetworkConfig(
            name="registry",
            algod_server=GetEnv(values, "REGISTRY_ALGOD_SERVER"),
            algod_token=GetEnv(values, "REGISTRY_ALGOD_TOKEN", ""),
        ),
        token_app_id=_as_int("TOKEN_APP_ID", GetEnv(values, "TOKEN_APP_ID")),
        claim_authority_app_id=_as_int("CLAIM_AUTHORITY_APP_ID", GetEnv(values, "CLAIM_AUTHORITY_APP_ID")),
        registry_app_id=_as_int("VESTING_REGISTRY_APP_ID", GetEnv(values, "VESTING_REGISTRY_APP_ID")),
        oracle_timeout=oracle_timeout,
        authority_address=authority_address,
        token_decimals=_as_int("TOKEN_DECIMALS", GetEnv(values, "TOKEN_DECIMALS", DEFAULT_TOKEN_DECIMALS)),
        extra_token_app_ids=extra_token_app_ids,
        abi_path=GetEnv(values, "VESTING_CLAIM_ABI_PATH", required=False),
    )
