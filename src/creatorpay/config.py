"""Configuration for creatorpay.

Settings live in the ``payments`` section of ``~/.creatorpay/config.yaml``.

Precedence (highest first):
    1. Explicit arguments
    2. Environment variables (``CREATORPAY_OY_ENVIRONMENT``, etc.)
    3. Config file (``~/.creatorpay/config.yaml``)
    4. Built-in defaults

The vault encryption key is deliberately *not* read from the config file;
it comes from ``CREATORPAY_ENCRYPTION_KEY`` or an explicit argument and is
wrapped in an immutable :class:`VaultKey` once at startup.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging
import os
import stat
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from creatorpay import parse_float_env, parse_int_env
from creatorpay.payments.base import ConfigurationError

logger = logging.getLogger(__name__)

_KNOWN_KEYS: set[str] = {"payments", "logging"}

_DEFAULT_DATA_DIR = Path.home() / ".creatorpay"

_BASE_URLS: dict[str, str] = {
    "production": "https://partner.oyindonesia.com",
    "sandbox": "https://api-stg.oyindonesia.com",
}


def get_config_path() -> Path:
    """Return the default config file path (``~/.creatorpay/config.yaml``)."""
    return _DEFAULT_DATA_DIR / "config.yaml"


# ---------------------------------------------------------------------------
# File handling
# ---------------------------------------------------------------------------


def _check_file_permissions(path: Path) -> None:
    """Warn if *path* is readable by group or others."""
    if sys.platform == "win32":
        return
    try:
        mode = path.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH):
            logger.warning(
                "Config file %s has overly permissive permissions (mode %04o). Recommended: chmod 600 %s",
                path,
                stat.S_IMODE(mode),
                path,
            )
    except OSError:
        pass


def _validate_config_schema(data: dict[str, Any], path: Path) -> None:
    """Log warnings for unknown top-level keys in the config file."""
    unknown = set(data.keys()) - _KNOWN_KEYS
    for key in sorted(unknown):
        logger.warning(
            "Config file %s contains unknown key %r (expected one of: %s)",
            path,
            key,
            ", ".join(sorted(_KNOWN_KEYS)),
        )


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read and parse the YAML config file; return ``{}`` on any failure."""
    if not path.is_file():
        return {}
    _check_file_permissions(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        if not isinstance(data, dict):
            return {}
        _validate_config_schema(data, path)
        return data
    except yaml.YAMLError as exc:
        logger.warning("Config file %s has invalid YAML: %s", path, exc)
        return {}
    except OSError as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return {}


def _write_config_file(path: Path, data: dict[str, Any]) -> None:
    """Write *data* to the YAML config file with owner-only permissions."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(data, fh, default_flow_style=False, sort_keys=False)
    if sys.platform != "win32":
        with contextlib.suppress(OSError):
            path.chmod(0o600)
            path.parent.chmod(0o700)


# ---------------------------------------------------------------------------
# Payment settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentConfig:
    """Resolved payment settings.

    Attributes:
        environment: ``"sandbox"`` or ``"production"``.
        base_url: Gateway API root.
        qris_endpoint: Path for minting a QRIS code.
        status_endpoint: Path for querying a transaction's status.
        payment_ttl_seconds: Lifetime of a minted code.
        poll_interval_seconds: Watcher tick.
        watcher_grace_seconds: How long past expiry a watcher may run.
        request_timeout_seconds: Per-request HTTP timeout.
        db_path: SQLite database file.
    """

    environment: str = "sandbox"
    base_url: str = _BASE_URLS["sandbox"]
    qris_endpoint: str = "/api/generate-qris"
    status_endpoint: str = "/api/payment-routing/check-status"
    payment_ttl_seconds: int = 600
    poll_interval_seconds: float = 30.0
    watcher_grace_seconds: float = 60.0
    request_timeout_seconds: float = 30.0
    db_path: str = field(default_factory=lambda: str(_DEFAULT_DATA_DIR / "creatorpay.db"))

    @property
    def live(self) -> bool:
        """``True`` when real money moves; placeholder codes are refused."""
        return self.environment == "production"


def load_payment_config(
    *,
    config_path: Path | None = None,
    **overrides: Any,
) -> PaymentConfig:
    """Resolve :class:`PaymentConfig` from file, environment and *overrides*.

    Raises:
        ConfigurationError: If the environment name is not recognised.
    """
    raw = _read_config_file(config_path or get_config_path())
    section = raw.get("payments", {})
    if not isinstance(section, dict):
        section = {}

    environment = (
        overrides.get("environment")
        or os.environ.get("CREATORPAY_OY_ENVIRONMENT")
        or section.get("environment")
        or "sandbox"
    ).strip().lower()
    if environment not in _BASE_URLS:
        raise ConfigurationError(
            f"Unknown gateway environment {environment!r} (expected one of: "
            f"{', '.join(sorted(_BASE_URLS))})",
            code="BAD_CONFIG",
        )

    base_url = (
        overrides.get("base_url")
        or os.environ.get("CREATORPAY_OY_BASE_URL")
        or section.get("base_url")
        or _BASE_URLS[environment]
    ).rstrip("/")

    defaults = PaymentConfig()
    values: dict[str, Any] = {
        "environment": environment,
        "base_url": base_url,
        "qris_endpoint": overrides.get("qris_endpoint")
        or os.environ.get("CREATORPAY_OY_QRIS_ENDPOINT")
        or section.get("qris_endpoint", defaults.qris_endpoint),
        "status_endpoint": overrides.get("status_endpoint")
        or section.get("status_endpoint", defaults.status_endpoint),
        "payment_ttl_seconds": parse_int_env(
            "CREATORPAY_PAYMENT_TTL",
            int(section.get("payment_ttl_seconds", defaults.payment_ttl_seconds)),
            minimum=1,
        ),
        "poll_interval_seconds": parse_float_env(
            "CREATORPAY_POLL_INTERVAL",
            float(section.get("poll_interval_seconds", defaults.poll_interval_seconds)),
            minimum=0.1,
        ),
        "watcher_grace_seconds": float(
            section.get("watcher_grace_seconds", defaults.watcher_grace_seconds)
        ),
        "request_timeout_seconds": float(
            section.get("request_timeout_seconds", defaults.request_timeout_seconds)
        ),
        "db_path": overrides.get("db_path")
        or os.environ.get("CREATORPAY_DB_PATH")
        or section.get("db_path", defaults.db_path),
    }
    for key in (
        "payment_ttl_seconds",
        "poll_interval_seconds",
        "watcher_grace_seconds",
        "request_timeout_seconds",
    ):
        if key in overrides:
            values[key] = overrides[key]
    return PaymentConfig(**values)


def save_payment_config(
    data: dict[str, Any],
    *,
    config_path: Path | None = None,
) -> None:
    """Merge *data* into the ``payments`` section and write it back."""
    path = config_path or get_config_path()
    raw = _read_config_file(path)
    section = raw.get("payments", {})
    if not isinstance(section, dict):
        section = {}
    section.update(data)
    raw["payments"] = section
    _write_config_file(path, raw)


# ---------------------------------------------------------------------------
# Vault key material
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VaultKey:
    """Read-only AES-256 key material for the credential vault.

    Build it once at startup with :meth:`from_secret` or :meth:`from_env`
    and hand it to :class:`~creatorpay.credential_vault.CredentialVault`.
    """

    key: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if len(self.key) != 32:
            raise ConfigurationError(
                "Vault key must be exactly 32 bytes", code="BAD_CONFIG"
            )

    @classmethod
    def from_secret(cls, secret: str) -> VaultKey:
        """Derive the key as the SHA-256 digest of *secret*."""
        if not secret:
            raise ConfigurationError(
                "Encryption secret is empty. Set CREATORPAY_ENCRYPTION_KEY.",
                code="BAD_CONFIG",
            )
        return cls(key=hashlib.sha256(secret.encode("utf-8")).digest())

    @classmethod
    def from_env(cls, secret: str | None = None) -> VaultKey:
        """Derive the key from *secret* or ``CREATORPAY_ENCRYPTION_KEY``."""
        return cls.from_secret(secret or os.environ.get("CREATORPAY_ENCRYPTION_KEY", ""))
