"""certflow configuration loader built on ConfigKit.

Lifecycle::

    # 1. CLI creates the singleton (once, at startup)
    CertflowConfig(config_file="/etc/certflow/config.yaml")

    # 2. Any module retrieves it afterwards
    from certflow.config import get_config
    get_config().settings.order.max_retries
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

from configkit import ConfigKit, ConfigKitMeta

from certflow.config.settings import CertflowSettings, build_settings

_SCHEMA_PATH = Path(__file__).parent / "schema.json"

_ENV_RE = re.compile(
    r"^\$\{([^}:]+?)(?::-(.*))?\}$",
    re.DOTALL,
)

_MIN_API_TOKEN_LENGTH = 16

log = logging.getLogger(__name__)

_instance: CertflowConfig | None = None


def get_config() -> CertflowConfig:
    """Return the initialised configuration singleton.

    Raises :class:`RuntimeError` if :class:`CertflowConfig` has not been
    created yet.
    """
    if _instance is None:
        msg = (
            "Configuration not initialised. "
            "CertflowConfig must be created with config_file= before calling get_config()."
        )
        raise RuntimeError(msg)
    return _instance


class ConfigValidationError(Exception):
    """Raised when cross-field validation finds one or more problems."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        body = "\n".join(f"  - {e}" for e in errors)
        super().__init__(f"Configuration validation failed:\n{body}")


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def _resolve_value(value: str, path: str) -> str:
    """Replace ``${VAR}`` or ``${VAR:-default}`` with the environment value."""
    match = _ENV_RE.match(value)
    if match is None:
        return value
    var_name, fallback = match.group(1), match.group(2)
    resolved = os.environ.get(var_name)
    if resolved is not None:
        return resolved
    if fallback is not None:
        return fallback
    raise ConfigValidationError(
        [f"Environment variable '${{{var_name}}}' referenced at '{path}' is not set and has no default"],
    )


def _resolve_env_vars(data: Any, path: str = "") -> None:  # noqa: ANN401
    """Resolve env-var references in *data* in place."""
    if isinstance(data, dict):
        items = list(data.items())
    elif isinstance(data, list):
        items = list(enumerate(data))
    else:
        return
    for key, value in items:
        child = (f"{path}.{key}" if path else str(key)) if isinstance(data, dict) else f"{path}[{key}]"
        if isinstance(value, str):
            data[key] = _resolve_value(value, child)
        else:
            _resolve_env_vars(value, child)


# ---------------------------------------------------------------------------
# Config class
# ---------------------------------------------------------------------------


class CertflowConfig(ConfigKit):
    """Central configuration for certflow.

    The JSON schema is bundled at ``config/schema.json``; callers only
    supply ``config_file``.  The typed tree is at :pyattr:`settings`,
    the raw dict at :pyattr:`data`.
    """

    def __init__(
        self,
        *,
        config_file: str | Path,
        schema_file: str | Path | None = None,  # noqa: ARG002
    ) -> None:
        global _instance  # noqa: PLW0603

        super().__init__(
            config_file=config_file,
            schema_file=_SCHEMA_PATH,
        )
        self._settings: CertflowSettings = build_settings(self.data)
        _instance = self

    def _load(self) -> None:
        """Load the file, then resolve env-var references before schema checks."""
        super()._load()
        _resolve_env_vars(self._data)  # noqa: SLF001

    @property
    def settings(self) -> CertflowSettings:
        return self._settings

    def additional_checks(self) -> None:
        """Cross-field validation, run by ConfigKit after the schema passes."""
        errors: list[str] = []

        acme = self.data.get("acme") or {}
        order = self.data.get("order") or {}
        worker = self.data.get("worker") or {}
        auth = self.data.get("auth") or {}
        server = self.data.get("server") or {}

        if not str(acme.get("path", "/root/.acme.sh/acme.sh")).strip():
            errors.append("acme.path must not be empty")

        if order.get("max_retries", 3) < 1:
            errors.append("order.max_retries must be >= 1")

        poll = worker.get("poll_seconds", 30)
        if worker.get("enabled", True) and poll < 1:
            errors.append(f"worker.poll_seconds must be >= 1 when the worker is enabled (got {poll})")

        owners = {str(i) for i in auth.get("owner_ids", [])}
        admins = {str(i) for i in auth.get("admin_ids", [])}
        if auth.get("owner_lock") and not owners:
            errors.append("auth.owner_ids must not be empty when auth.owner_lock is true")
        overlap = owners & admins
        if overlap:
            log.warning(
                "Config warning: ids listed as both owner and admin (owner wins): %s",
                ", ".join(sorted(overlap)),
            )

        token = server.get("api_token") or ""
        if token and len(token) < _MIN_API_TOKEN_LENGTH:
            errors.append(
                f"server.api_token is too short ({len(token)} chars), "
                f"minimum {_MIN_API_TOKEN_LENGTH} characters required",
            )

        if errors:
            raise ConfigValidationError(errors)

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton -- testing only."""
        global _instance  # noqa: PLW0603
        _instance = None
        ConfigKitMeta.reset()

    def __repr__(self) -> str:
        source = self.data.get("_source", "?")
        return f"<CertflowConfig config_file={source}>"
