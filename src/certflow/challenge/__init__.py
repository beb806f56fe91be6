"""DNS challenge verification."""

from certflow.challenge.dns01 import DnsLookupError, TxtVerifier

__all__ = ["DnsLookupError", "TxtVerifier"]
