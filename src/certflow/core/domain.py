"""Domain name validation for certificate orders.

Orders always name the registrable (root) domain; a wildcard order
adds ``*.`` itself, so users never type the glyph.
"""

from __future__ import annotations

import encodings.idna  # noqa: F401 (registers the "idna" codec)
import re

from certflow.core.errors import ValidationError

_MAX_DOMAIN_LENGTH = 253
_MAX_LABEL_LENGTH = 63
_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_TLD_RE = re.compile(r"^(?:[a-z]{2,63}|xn--[a-z0-9-]{1,59})$")

# Second-level labels that registries under a ccTLD sell names beneath
# (example.co.uk, example.com.cn, ...).
_SECOND_LEVEL_LABELS = frozenset({"ac", "co", "com", "edu", "go", "gov", "ne", "net", "or", "org"})


def _to_ascii(value: str) -> str:
    try:
        value.encode("ascii")
        return value
    except UnicodeEncodeError:
        pass
    parts = []
    for label in value.split("."):
        try:
            parts.append(label.encode("idna").decode("ascii"))
        except UnicodeError as err:
            msg = f"Invalid internationalized label '{label}'"
            raise ValidationError(msg) from err
    return ".".join(parts)


def has_two_level_suffix(labels: list[str]) -> bool:
    """Return whether the last two labels look like ``co.uk`` / ``com.cn``."""
    return (
        len(labels) >= 2  # noqa: PLR2004
        and len(labels[-1]) == 2  # noqa: PLR2004
        and labels[-1].isalpha()
        and labels[-2] in _SECOND_LEVEL_LABELS
    )


def normalize_domain(raw: str) -> str:
    """Return the lower-cased, validated root domain for *raw*.

    Raises :class:`ValidationError` with a user-facing explanation for
    anything that is not a bare registrable domain.
    """
    domain = (raw or "").strip().lower().rstrip(".")
    if not domain:
        raise ValidationError("Please send a domain name, for example example.com")
    if "://" in domain or "/" in domain or ":" in domain:
        raise ValidationError("Send only the domain name, without scheme, path or port")
    if "*" in domain:
        raise ValidationError("Do not include '*'; choose the wildcard type instead")
    if any(ch.isspace() for ch in domain):
        raise ValidationError("Domain names cannot contain spaces")

    domain = _to_ascii(domain)
    if len(domain) > _MAX_DOMAIN_LENGTH:
        msg = f"Domain is longer than {_MAX_DOMAIN_LENGTH} characters"
        raise ValidationError(msg)

    labels = domain.split(".")
    if len(labels) < 2:  # noqa: PLR2004
        raise ValidationError("Domain must have at least two labels, for example example.com")
    for label in labels:
        if len(label) > _MAX_LABEL_LENGTH or not _LABEL_RE.match(label):
            msg = f"Invalid domain label '{label}'"
            raise ValidationError(msg)
    if not _TLD_RE.match(labels[-1]):
        msg = f"Invalid top-level domain '{labels[-1]}'"
        raise ValidationError(msg)

    if labels[0] == "www":
        raise ValidationError("Send the root domain without 'www.', for example example.com")

    limit = 3 if has_two_level_suffix(labels) else 2
    if len(labels) > limit:
        msg = f"Only root domains are supported; '{domain}' is a subdomain"
        raise ValidationError(msg)
    return domain
