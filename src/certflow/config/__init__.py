"""Configuration subsystem for certflow.

Public API::

    from certflow.config import get_config, CertflowConfig

    # At startup (CLI only):
    CertflowConfig(config_file="config.yaml")

    # Everywhere else:
    cfg = get_config()
    cfg.settings.worker.poll_seconds
"""

from certflow.config.certflow_config import (
    CertflowConfig,
    ConfigValidationError,
    get_config,
)
from certflow.config.settings import (
    AcmeToolSettings,
    AuditLogSettings,
    AuthSettings,
    CertflowSettings,
    DatabaseSettings,
    DnsSettings,
    LoggingSettings,
    OrderSettings,
    ServerSettings,
    WorkerSettings,
    build_settings,
)

__all__ = [
    "AcmeToolSettings",
    "AuditLogSettings",
    "AuthSettings",
    "CertflowConfig",
    "CertflowSettings",
    "ConfigValidationError",
    "DatabaseSettings",
    "DnsSettings",
    "LoggingSettings",
    "OrderSettings",
    "ServerSettings",
    "WorkerSettings",
    "build_settings",
    "get_config",
]
