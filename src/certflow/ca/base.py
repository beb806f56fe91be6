"""External certificate tool interface and its tagged results.

Callers never inspect tool output themselves: every call returns one
of a closed set of :data:`ToolResult` variants and the adapter alone
decides which.

==========================  =============================================
Variant                     Meaning
==========================  =============================================
:class:`ChallengeIssued`    a DNS challenge was produced
:class:`Success`            the operation completed
:class:`AlreadyExists`      the CA side already holds a certificate
:class:`PropagationPending` the CA has not yet seen the TXT record
:class:`Failure`            anything else (including timeouts)
==========================  =============================================
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from certflow.models.order import DnsChallenge


@dataclass(frozen=True)
class ChallengeIssued:
    challenge: DnsChallenge
    output: str = ""


@dataclass(frozen=True)
class Success:
    output: str = ""


@dataclass(frozen=True)
class AlreadyExists:
    output: str = ""


@dataclass(frozen=True)
class PropagationPending:
    output: str = ""


@dataclass(frozen=True)
class Failure:
    message: str
    output: str = ""


ToolResult = ChallengeIssued | Success | AlreadyExists | PropagationPending | Failure


@dataclass(frozen=True)
class CertPaths:
    """Where an installed certificate's files are written."""

    directory: str
    cert: str
    key: str
    fullchain: str
    ca: str

    def by_kind(self) -> dict[str, str]:
        return {"cert": self.cert, "key": self.key, "fullchain": self.fullchain, "ca": self.ca}


class ExternalCertTool(abc.ABC):
    """Boundary to the program that talks to the CA."""

    @abc.abstractmethod
    def paths_for(self, domain: str) -> CertPaths:
        """Return the export locations for *domain*."""

    @abc.abstractmethod
    def generate_challenge(self, domains: list[str]) -> ToolResult:
        """Start a DNS-mode issuance and report the TXT record to publish.

        Expected variants: ChallengeIssued, AlreadyExists, Failure.
        """

    @abc.abstractmethod
    def renew(self, domains: list[str]) -> ToolResult:
        """Finish issuance once the TXT record is published.

        Expected variants: Success, PropagationPending, Failure.
        """

    @abc.abstractmethod
    def install(self, domain: str, paths: CertPaths) -> ToolResult:
        """Export the issued certificate files.  Success or Failure."""

    @abc.abstractmethod
    def remove(self, domain: str) -> ToolResult:
        """Forget the CA-side record for *domain*.  Success or Failure."""
