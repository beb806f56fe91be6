"""DNS-01 TXT record verifier.

Checks that every expected TXT value is published at the challenge
host before the CA is asked to validate it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import dns.exception
import dns.resolver

if TYPE_CHECKING:
    from collections.abc import Iterable

    from certflow.config.settings import DnsSettings

log = logging.getLogger(__name__)


class DnsLookupError(Exception):
    """The resolver could not answer (timeout, SERVFAIL, refused).

    Distinct from "record not there yet", which is a plain ``False``
    from :meth:`TxtVerifier.verify`.
    """


class TxtVerifier:
    """Answer "are all expected TXT values visible at host".

    Parameters
    ----------
    settings:
        The ``dns`` configuration section.  An empty resolver list
        uses the system resolver configuration.

    """

    def __init__(self, settings: DnsSettings) -> None:
        self._settings = settings

    def _resolver(self) -> dns.resolver.Resolver:
        resolver = dns.resolver.Resolver()
        if self._settings.resolvers:
            resolver.nameservers = list(self._settings.resolvers)
        resolver.lifetime = self._settings.timeout_seconds
        return resolver

    def lookup(self, host: str) -> set[str]:
        """Return the TXT strings published at *host* (empty if none).

        Raises :class:`DnsLookupError` when the lookup itself fails.
        """
        try:
            answer = self._resolver().resolve(host, "TXT")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            log.debug("No TXT record at %s yet", host)
            return set()
        except dns.resolver.NoNameservers as exc:
            msg = f"No nameserver answered for {host} (SERVFAIL or refused)"
            raise DnsLookupError(msg) from exc
        except dns.exception.Timeout as exc:
            msg = f"TXT lookup for {host} timed out after {self._settings.timeout_seconds}s"
            raise DnsLookupError(msg) from exc
        except dns.exception.DNSException as exc:
            msg = f"DNS error querying {host}: {exc}"
            raise DnsLookupError(msg) from exc

        # TXT rdata is a tuple of byte segments; concatenate them.
        return {b"".join(rdata.strings).decode("ascii", errors="replace") for rdata in answer}

    def verify(self, host: str, values: Iterable[str]) -> bool:
        """Return ``True`` only if every value in *values* is published at *host*."""
        expected = set(values)
        if not expected:
            return False
        found = self.lookup(host)
        missing = expected - found
        if missing:
            log.info(
                "TXT check for %s: %d of %d value(s) visible",
                host,
                len(expected) - len(missing),
                len(expected),
            )
            return False
        log.info("TXT check for %s: all %d value(s) visible", host, len(expected))
        return True
