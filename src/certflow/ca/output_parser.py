"""Parse DNS-01 challenges out of free-text ``acme.sh`` output.

``acme.sh --issue --dns --dry-run`` prints one block per identifier::

    [Mon Jan  1 00:00:00 UTC 2024] Add the following TXT record:
    [Mon Jan  1 00:00:00 UTC 2024] Domain: '_acme-challenge.example.com'
    [Mon Jan  1 00:00:00 UTC 2024] TXT value: 'h2VzH...'

A wildcard order yields two blocks for the same host.  Output may be
coloured with ANSI escape sequences.
"""

from __future__ import annotations

import re

from certflow.models.order import DnsChallenge

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
_DOMAIN_RE = re.compile(r"Domain:\s*['\"]?([^'\"\s]+)['\"]?", re.IGNORECASE)
_VALUE_RE = re.compile(r"TXT\s+value:\s*['\"]?([^'\"\s]+)['\"]?", re.IGNORECASE)

CHALLENGE_PREFIX = "_acme-challenge."


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def challenge_host(name: str) -> str:
    """Normalise a record name to the host the TXT record lives at.

    ``*.example.com`` and ``_acme-challenge.*.example.com`` both map to
    ``_acme-challenge.example.com``.
    """
    host = name.strip().strip(".").lower()
    if host.startswith(CHALLENGE_PREFIX):
        host = host[len(CHALLENGE_PREFIX):]
    if host.startswith("*."):
        host = host[2:]
    return CHALLENGE_PREFIX + host


def extract_challenge(output: str | None) -> DnsChallenge | None:
    """Return the TXT host and ordered, de-duplicated values, or ``None``.

    Values are paired with the most recent ``Domain:`` line.  When the
    output names more than one host, only values for the first host
    are kept.
    """
    if not output:
        return None

    host: str | None = None
    current: str | None = None
    values: list[str] = []

    for raw_line in strip_ansi(output).splitlines():
        value_match = _VALUE_RE.search(raw_line)
        if value_match is None:
            domain_match = _DOMAIN_RE.search(raw_line)
            if domain_match:
                current = challenge_host(domain_match.group(1))
                if host is None:
                    host = current
            continue
        if current is None or current != host:
            continue
        value = value_match.group(1)
        if value not in values:
            values.append(value)

    if host is None or not values:
        return None
    return DnsChallenge(host=host, values=tuple(values))
