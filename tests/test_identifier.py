# tests/test_identifier.py
"""Tests for remote calendar identifier parsing."""

import pytest

from calfed.errors import InvalidRemoteCalendarIdentifierError
from calfed.identifier import RemoteCalendarIdentifier, is_valid_domain


class TestParse:
    """Test RemoteCalendarIdentifier.parse."""

    @pytest.mark.parametrize("raw", [
        "alice@remote.example",
        "a.b-c_d@sub.remote.example",
        "events@localhost:8080",
        "Main@Remote.Example",
        "x@a",
    ])
    def test_round_trip(self, raw):
        """Parsing the serialized form gives back the same identifier."""
        parsed = RemoteCalendarIdentifier.parse(raw)
        assert RemoteCalendarIdentifier.parse(str(parsed)) == parsed

    def test_parts(self):
        ident = RemoteCalendarIdentifier.parse("alice@remote.example")
        assert ident.local_part == "alice"
        assert ident.domain == "remote.example"
        assert str(ident) == "alice@remote.example"
        assert ident.acct == "acct:alice@remote.example"

    def test_domain_lowercased(self):
        """Domains are case-insensitive; the local part is kept as written."""
        ident = RemoteCalendarIdentifier.parse("Alice@REMOTE.Example")
        assert ident.domain == "remote.example"
        assert ident.local_part == "Alice"

    def test_acct_prefix_and_whitespace(self):
        ident = RemoteCalendarIdentifier.parse("  acct:alice@remote.example ")
        assert ident == RemoteCalendarIdentifier("alice", "remote.example")

    def test_port(self):
        ident = RemoteCalendarIdentifier.parse("alice@remote.example:8443")
        assert ident.domain == "remote.example:8443"
        assert ident.host == "remote.example"

    @pytest.mark.parametrize("raw", [
        "",
        "alice",
        "@remote.example",
        "alice@",
        "alice@@remote.example",
        "alice@bob@remote.example",
        "ali ce@remote.example",
        "alice!@remote.example",
        "alice@https://remote.example",
        "alice@remote.example/path",
        "alice@-remote.example",
        "alice@remote-.example",
        "alice@remote..example",
        "alice@remote.example:0",
        "alice@remote.example:99999",
        "alice@remote.example:http",
        "alice\n@remote.example",
        "alice@remote\n.example",
        "alice@remote.example\n:443",
        "alice@remote.example:\u0664\u0664\u0663",
    ])
    def test_invalid(self, raw):
        with pytest.raises(InvalidRemoteCalendarIdentifierError):
            RemoteCalendarIdentifier.parse(raw)

    def test_non_string(self):
        with pytest.raises(InvalidRemoteCalendarIdentifierError):
            RemoteCalendarIdentifier.parse(None)

    def test_error_message(self):
        with pytest.raises(InvalidRemoteCalendarIdentifierError) as exc_info:
            RemoteCalendarIdentifier.parse("nope")
        assert "username@domain" in exc_info.value.message

    def test_immutable(self):
        ident = RemoteCalendarIdentifier.parse("alice@remote.example")
        with pytest.raises(AttributeError):
            ident.local_part = "bob"


class TestSameCalendar:

    def test_case_insensitive(self):
        a = RemoteCalendarIdentifier.parse("Alice@remote.example")
        b = RemoteCalendarIdentifier.parse("alice@REMOTE.example")
        assert a.same_calendar(b)
        assert a != b

    def test_different_domain(self):
        a = RemoteCalendarIdentifier.parse("alice@remote.example")
        b = RemoteCalendarIdentifier.parse("alice@other.example")
        assert not a.same_calendar(b)


class TestIsValidDomain:

    def test_long_label(self):
        assert is_valid_domain("a" * 63 + ".example")
        assert not is_valid_domain("a" * 64 + ".example")

    def test_too_long(self):
        assert not is_valid_domain(".".join(["abcdefgh"] * 40))
