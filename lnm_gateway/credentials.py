"""Credentials: one strict shape for exchange API keys.

Callers hand over credentials in whatever casing their storage uses
(``apiKey``, ``api_key``, ``isTestnet`` ...). They are normalized here, once,
so nothing further in the gateway has to guess.

Loader priority order:
1. Environment variables: LNM_API_KEY, LNM_API_SECRET, LNM_API_PASSPHRASE
   (plus optional LNM_ENVIRONMENT, LNM_ACCOUNT_LABEL)
2. Config file: ~/.lnmarkets_config.json or custom path via ENV LNM_CONFIG_PATH
"""
import hashlib
import json
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, SecretStr, model_validator

from .logging_setup import logger


class Environment(str, Enum):
    PRODUCTION = "production"
    TEST = "test"


_ENVIRONMENT_NAMES = {
    "production": Environment.PRODUCTION,
    "prod": Environment.PRODUCTION,
    "mainnet": Environment.PRODUCTION,
    "live": Environment.PRODUCTION,
    "test": Environment.TEST,
    "testnet": Environment.TEST,
}

_FIELD_ALIASES = {
    "api_key": ("api_key", "apiKey", "key", "API_KEY"),
    "api_secret": ("api_secret", "apiSecret", "secret", "API_SECRET"),
    "passphrase": ("passphrase", "passPhrase", "api_passphrase", "apiPassphrase"),
    "environment": ("environment", "network"),
    "label": ("label", "account_name", "accountName", "name"),
}

# Boolean flags that older credential records use instead of `environment`.
_TESTNET_FLAGS = ("is_testnet", "isTestnet", "testnet")


def mask(value: str, keep: int = 6) -> str:
    """Return a log-safe prefix of a credential value."""
    if not value:
        return "<empty>"
    return f"{value[:keep]}..."


def _pick(raw: Mapping[str, Any], field: str, aliases) -> Any:
    present = {alias: raw[alias] for alias in aliases if alias in raw and raw[alias] is not None}
    distinct = {str(v).strip() if isinstance(v, str) else v for v in present.values()}
    if len(distinct) > 1:
        raise ValueError(f"conflicting values for '{field}' under {sorted(present)}")
    return next(iter(present.values()), None)


def _parse_environment(value: Any) -> Optional[Environment]:
    if value is None or isinstance(value, Environment):
        return value
    name = str(value).strip().lower()
    if name not in _ENVIRONMENT_NAMES:
        raise ValueError(f"unknown environment '{value}'")
    return _ENVIRONMENT_NAMES[name]


class Credentials(BaseModel):
    """API credentials for one exchange account.

    Immutable. Secrets are held as ``SecretStr`` so they never appear in
    ``repr`` or logs; use :attr:`key_prefix` for diagnostics.
    """

    model_config = ConfigDict(frozen=True)

    api_key: str
    api_secret: SecretStr
    passphrase: SecretStr
    environment: Optional[Environment] = None
    label: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        known = {alias for aliases in _FIELD_ALIASES.values() for alias in aliases}
        unknown = set(data) - known - set(_TESTNET_FLAGS)
        if unknown:
            raise ValueError(f"unexpected credential fields: {sorted(unknown)}")

        out: Dict[str, Any] = {}
        for field, aliases in _FIELD_ALIASES.items():
            out[field] = _pick(data, field, aliases)

        for field in ("api_key", "api_secret", "passphrase"):
            value = out[field]
            if isinstance(value, SecretStr):
                value = value.get_secret_value()
            if value is None or not str(value).strip():
                raise ValueError(f"'{field}' is required and must not be blank")
            out[field] = str(value).strip()

        flag = _pick(data, "is_testnet", _TESTNET_FLAGS)
        environment = _parse_environment(out["environment"])
        if flag is not None:
            if not isinstance(flag, bool):
                raise ValueError("testnet flag must be a boolean")
            flagged = Environment.TEST if flag else Environment.PRODUCTION
            if environment is not None and environment is not flagged:
                raise ValueError("testnet flag contradicts 'environment'")
            environment = flagged
        out["environment"] = environment

        if out["label"] is not None:
            out["label"] = str(out["label"]).strip() or None
        return out

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Credentials":
        """Build credentials from a loosely-shaped record (DB row, JSON, env)."""
        return cls.model_validate(dict(data))

    @property
    def key_prefix(self) -> str:
        return mask(self.api_key)

    @property
    def fingerprint(self) -> str:
        """Stable, non-reversible account identity for partitioning state."""
        return hashlib.sha256(self.api_key.encode("utf-8")).hexdigest()[:16]


def load_credentials(config_path: Optional[str] = None) -> Credentials:
    """Load exchange credentials from env or config file.

    Args:
        config_path: Optional override path to config file. If not provided,
                     checks LNM_CONFIG_PATH env var, then ~/.lnmarkets_config.json

    Returns:
        Credentials

    Raises:
        ValueError: If credentials are not found, incomplete or malformed
    """
    env = {
        "api_key": os.getenv("LNM_API_KEY"),
        "api_secret": os.getenv("LNM_API_SECRET"),
        "passphrase": os.getenv("LNM_API_PASSPHRASE"),
    }
    if all(env.values()):
        env["environment"] = os.getenv("LNM_ENVIRONMENT")
        env["label"] = os.getenv("LNM_ACCOUNT_LABEL")
        return Credentials.from_mapping(env)

    if config_path is None:
        config_path = os.getenv("LNM_CONFIG_PATH")
    if config_path is None:
        config_path = str(Path.home() / ".lnmarkets_config.json")

    config_file = Path(config_path)
    if config_file.exists():
        try:
            with config_file.open("r") as f:
                cfg = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Failed to load config from {config_path}: {e}")
        # env vars still win field-by-field over the file
        merged = {k: v for k, v in cfg.items()}
        for field, value in env.items():
            if value:
                for alias in _FIELD_ALIASES[field]:
                    merged.pop(alias, None)
                merged[field] = value
        return Credentials.from_mapping(merged)

    raise ValueError(
        "Missing exchange credentials. Provide via:\n"
        "  - Environment: LNM_API_KEY, LNM_API_SECRET, LNM_API_PASSPHRASE\n"
        f"  - Config file: {config_path}\n"
        "  - LNM_CONFIG_PATH env var to override config location"
    )


def save_config(
    config_path: str,
    credentials: Credentials,
) -> None:
    """Save credentials to a config file for later use.

    WARNING: Stores secrets in plaintext. The file is restricted to mode 600
    where the platform supports it.
    """
    config = {
        "api_key": credentials.api_key,
        "api_secret": credentials.api_secret.get_secret_value(),
        "passphrase": credentials.passphrase.get_secret_value(),
    }
    if credentials.environment is not None:
        config["environment"] = credentials.environment.value
    if credentials.label:
        config["label"] = credentials.label

    cfg_file = Path(config_path)
    cfg_file.parent.mkdir(parents=True, exist_ok=True)

    with cfg_file.open("w") as f:
        json.dump(config, f, indent=2)

    try:
        cfg_file.chmod(0o600)
    except OSError as e:
        logger.warning(f"Could not restrict credentials file permissions | path={cfg_file} error={e}")
