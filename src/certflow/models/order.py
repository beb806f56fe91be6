"""Certificate order entity and DNS challenge value object."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from certflow.core.types import CertType, OrderStatus, WorkFlag

_EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class DnsChallenge:
    """TXT record the CA expects before it will issue.

    *values* holds one entry for a root certificate and two (in CA
    output order) for a wildcard, both published at the same host.
    """

    host: str
    values: tuple[str, ...]


@dataclass(frozen=True)
class Order:
    id: int | None
    user_id: int
    status: OrderStatus = OrderStatus.CREATED
    domain: str = ""
    cert_type: CertType | None = None
    flags: frozenset[WorkFlag] = field(default_factory=frozenset)
    retry_count: int = 0
    last_error: str | None = None
    acme_output: str | None = None
    txt_host: str | None = None
    txt_values: tuple[str, ...] = ()
    cert_path: str | None = None
    key_path: str | None = None
    fullchain_path: str | None = None
    created_at: datetime = _EPOCH
    updated_at: datetime = _EPOCH

    @property
    def domains(self) -> list[str]:
        """SAN list handed to the CA tool."""
        if not self.domain:
            return []
        if self.cert_type == CertType.WILDCARD:
            return [self.domain, f"*.{self.domain}"]
        return [self.domain]

    @property
    def challenge(self) -> DnsChallenge | None:
        if not self.txt_host or not self.txt_values:
            return None
        return DnsChallenge(host=self.txt_host, values=self.txt_values)

    def has_flag(self, flag: WorkFlag) -> bool:
        return flag in self.flags
