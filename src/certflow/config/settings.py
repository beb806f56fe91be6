"""Typed, frozen dataclasses for every configuration section.

Defaults live in the ``_build_*`` functions below; the JSON schema
only documents and constrains shapes.

Access pattern::

    from certflow.config import get_config

    order = get_config().settings.order
    print(order.max_retries, order.failed_ttl_minutes)
"""

from __future__ import annotations

from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServerSettings:
    """HTTP API bind address, gunicorn sizing and bearer token."""

    bind: str
    port: int
    workers: int
    timeout: int
    graceful_timeout: int
    api_token: str | None


def _build_server(data: dict | None) -> ServerSettings:
    d = data or {}
    return ServerSettings(
        bind=d.get("bind", "127.0.0.1"),
        port=d.get("port", 8080),
        workers=d.get("workers", 2),
        timeout=d.get("timeout", 300),
        graceful_timeout=d.get("graceful_timeout", 30),
        api_token=d.get("api_token") or None,
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    """PostgreSQL connection and pool settings."""

    host: str
    port: int
    database: str
    user: str
    password: str
    sslmode: str
    min_connections: int
    max_connections: int
    connection_timeout: float
    auto_setup: bool


def _build_database(data: dict | None) -> DatabaseSettings:
    d = data or {}
    return DatabaseSettings(
        host=d.get("host", "localhost"),
        port=d.get("port", 5432),
        database=d["database"],
        user=d["user"],
        password=d.get("password", ""),
        sslmode=d.get("sslmode", "prefer"),
        min_connections=d.get("min_connections", 1),
        max_connections=d.get("max_connections", 5),
        connection_timeout=d.get("connection_timeout", 30.0),
        auto_setup=d.get("auto_setup", False),
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditLogSettings:
    """Rotating audit file for ``certflow.audit`` records."""

    enabled: bool
    file: str | None
    max_file_size_bytes: int
    backup_count: int


@dataclass(frozen=True)
class LoggingSettings:
    level: str
    format: str
    audit: AuditLogSettings


def _build_logging(data: dict | None) -> LoggingSettings:
    d = data or {}
    a = d.get("audit") or {}
    return LoggingSettings(
        level=d.get("level", "INFO"),
        format=d.get("format", "text"),
        audit=AuditLogSettings(
            enabled=a.get("enabled", False),
            file=a.get("file"),
            max_file_size_bytes=a.get("max_file_size_bytes", 10485760),
            backup_count=a.get("backup_count", 5),
        ),
    )


# ---------------------------------------------------------------------------
# acme.sh
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AcmeToolSettings:
    """Location and invocation options of the external ``acme.sh`` client."""

    path: str
    server: str | None
    export_path: str
    timeout_seconds: int
    key_length: str | None
    reload_command: str | None


def _build_acme(data: dict | None) -> AcmeToolSettings:
    d = data or {}
    return AcmeToolSettings(
        path=d.get("path", "/root/.acme.sh/acme.sh"),
        server=d.get("server") or None,
        export_path=d.get("export_path", "/etc/certflow/certs"),
        timeout_seconds=d.get("timeout_seconds", 180),
        key_length=d.get("key_length") or None,
        reload_command=d.get("reload_command") or None,
    )


# ---------------------------------------------------------------------------
# DNS
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DnsSettings:
    """Resolvers consulted when checking published TXT records."""

    resolvers: tuple[str, ...]
    timeout_seconds: int


def _build_dns(data: dict | None) -> DnsSettings:
    d = data or {}
    return DnsSettings(
        resolvers=tuple(d.get("resolvers", [])),
        timeout_seconds=d.get("timeout_seconds", 10),
    )


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrderSettings:
    """Retry ceiling, failed-order TTL, race cooldown and starting quota."""

    max_retries: int
    failed_ttl_minutes: int
    exists_cooldown_seconds: int
    default_quota: int


def _build_order(data: dict | None) -> OrderSettings:
    d = data or {}
    return OrderSettings(
        max_retries=d.get("max_retries", 3),
        failed_ttl_minutes=d.get("failed_ttl_minutes", 0),
        exists_cooldown_seconds=d.get("exists_cooldown_seconds", 600),
        default_quota=d.get("default_quota", 1),
    )


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkerSettings:
    enabled: bool
    poll_seconds: int
    batch_size: int
    leader_election: bool


def _build_worker(data: dict | None) -> WorkerSettings:
    d = data or {}
    return WorkerSettings(
        enabled=d.get("enabled", True),
        poll_seconds=d.get("poll_seconds", 30),
        batch_size=d.get("batch_size", 20),
        leader_election=d.get("leader_election", True),
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthSettings:
    """Role assignment by chat identity.

    When *owner_lock* is set, only owners may use the service at all.
    """

    owner_ids: frozenset[str]
    admin_ids: frozenset[str]
    owner_lock: bool


def _build_auth(data: dict | None) -> AuthSettings:
    d = data or {}
    return AuthSettings(
        owner_ids=frozenset(str(i) for i in d.get("owner_ids", [])),
        admin_ids=frozenset(str(i) for i in d.get("admin_ids", [])),
        owner_lock=d.get("owner_lock", False),
    )


# ---------------------------------------------------------------------------
# Root settings aggregate
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CertflowSettings:
    server: ServerSettings
    database: DatabaseSettings
    logging: LoggingSettings
    acme: AcmeToolSettings
    dns: DnsSettings
    order: OrderSettings
    worker: WorkerSettings
    auth: AuthSettings


def build_settings(data: dict) -> CertflowSettings:
    """Build the typed settings tree from validated, env-resolved data."""
    return CertflowSettings(
        server=_build_server(data.get("server")),
        database=_build_database(data.get("database")),
        logging=_build_logging(data.get("logging")),
        acme=_build_acme(data.get("acme")),
        dns=_build_dns(data.get("dns")),
        order=_build_order(data.get("order")),
        worker=_build_worker(data.get("worker")),
        auth=_build_auth(data.get("auth")),
    )
