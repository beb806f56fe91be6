"""Tests for certflow.challenge.dns01.TxtVerifier (resolver mocked)."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import dns.exception
import dns.resolver
import pytest

from certflow.challenge.dns01 import DnsLookupError, TxtVerifier
from certflow.config.settings import DnsSettings


def _rdata(*segments: bytes):
    rdata = MagicMock()
    rdata.strings = segments
    return rdata


@pytest.fixture()
def resolver():
    with patch("certflow.challenge.dns01.dns.resolver.Resolver") as cls:
        instance = MagicMock()
        cls.return_value = instance
        yield instance


@pytest.fixture()
def verifier():
    return TxtVerifier(DnsSettings(resolvers=("1.1.1.1", "8.8.8.8"), timeout_seconds=5))


class TestLookup:
    def test_resolver_configuration(self, resolver, verifier):
        resolver.resolve.return_value = [_rdata(b"abc")]
        verifier.lookup("_acme-challenge.example.com")
        assert resolver.nameservers == ["1.1.1.1", "8.8.8.8"]
        assert resolver.lifetime == 5
        resolver.resolve.assert_called_once_with("_acme-challenge.example.com", "TXT")

    def test_segments_are_joined(self, resolver, verifier):
        resolver.resolve.return_value = [_rdata(b"abc", b"def"), _rdata(b"xyz")]
        assert verifier.lookup("h") == {"abcdef", "xyz"}

    @pytest.mark.parametrize("exc", [dns.resolver.NXDOMAIN(), dns.resolver.NoAnswer()])
    def test_missing_record_is_empty(self, resolver, verifier, exc):
        resolver.resolve.side_effect = exc
        assert verifier.lookup("h") == set()

    @pytest.mark.parametrize(
        ("exc", "fragment"),
        [
            (dns.resolver.NoNameservers(), "SERVFAIL"),
            (dns.exception.Timeout(), "timed out after 5s"),
            (dns.exception.DNSException("weird"), "DNS error"),
        ],
    )
    def test_lookup_failures(self, resolver, verifier, exc, fragment):
        resolver.resolve.side_effect = exc
        with pytest.raises(DnsLookupError, match=fragment):
            verifier.lookup("h")


class TestVerify:
    def test_all_values_visible(self, resolver, verifier):
        resolver.resolve.return_value = [_rdata(b"one"), _rdata(b"two"), _rdata(b"stale")]
        assert verifier.verify("h", ["one", "two"]) is True

    def test_partial_propagation(self, resolver, verifier):
        resolver.resolve.return_value = [_rdata(b"one")]
        assert verifier.verify("h", ["one", "two"]) is False

    def test_no_expected_values(self, resolver, verifier):
        assert verifier.verify("h", []) is False
        resolver.resolve.assert_not_called()

    def test_system_resolver_when_unconfigured(self, resolver):
        resolver.nameservers = ["127.0.0.53"]
        resolver.resolve.return_value = []
        TxtVerifier(DnsSettings(resolvers=(), timeout_seconds=3)).lookup("h")
        assert resolver.nameservers == ["127.0.0.53"]
