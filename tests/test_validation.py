"""Tests for request validation helpers and the username content filter."""
import pytest

from roomgate.service.errors import ValidationError
from roomgate.service.validation import (
    LOCAL_CLIENT,
    UNKNOWN_CLIENT,
    TermListFilter,
    is_allowed_username,
    is_valid_username,
    normalize_client_address,
    require_password_length,
    require_room_id,
    require_username,
)


class TestUsernames:
    @pytest.mark.parametrize("name", ["alice", "bob_99", "a-b-c", "x" * 30])
    def test_valid(self, name):
        assert is_valid_username(name)

    @pytest.mark.parametrize(
        "name", ["", "ab", "1alice", "x" * 31, "al ice", "alice-", "al--ice", "Alice"]
    )
    def test_invalid(self, name):
        assert not is_valid_username(name)

    def test_require_username_normalizes(self):
        assert require_username("  Alice ") == "alice"

    def test_require_username_rejects_missing(self):
        with pytest.raises(ValidationError) as exc_info:
            require_username(None)
        assert exc_info.value.detail == {"field": "username"}

    def test_filter_applies(self):
        content_filter = TermListFilter(["badword"])
        with pytest.raises(ValidationError):
            require_username("xbadwordx", content_filter)
        assert is_allowed_username("alice", content_filter)
        assert not is_allowed_username("bad-word", content_filter)


class TestTermListFilter:
    def test_leet_and_separators_are_folded(self):
        content_filter = TermListFilter(["spam"])
        assert content_filter.is_blocked("$p4m")
        assert content_filter.is_blocked("s.p_a m")
        assert not content_filter.is_blocked("sparrow")

    def test_short_terms_are_ignored(self):
        content_filter = TermListFilter(["ab", " "])
        assert content_filter.terms == []
        assert not content_filter.is_blocked("abc")


class TestRoomsAndPasswords:
    def test_room_id(self):
        assert require_room_id(" Lobby1 ") == "lobby1"
        with pytest.raises(ValidationError):
            require_room_id("room-1")
        with pytest.raises(ValidationError):
            require_room_id(None)

    def test_password_length(self):
        assert require_password_length("12345678", min_length=8, max_length=10) == "12345678"
        with pytest.raises(ValidationError) as exc_info:
            require_password_length("1234567", min_length=8, max_length=10)
        assert exc_info.value.detail["min_length"] == 8
        with pytest.raises(ValidationError):
            require_password_length("x" * 11, min_length=8, max_length=10)
        with pytest.raises(ValidationError):
            require_password_length(None, min_length=8, max_length=10)


class TestClientAddress:
    def test_forwarded_for_first_hop(self):
        headers = {"x-forwarded-for": "203.0.113.7, 10.0.0.1"}
        assert normalize_client_address(headers, "10.0.0.1") == "203.0.113.7"

    def test_header_precedence(self):
        headers = {"x-real-ip": "198.51.100.2", "cf-connecting-ip": "198.51.100.3"}
        assert normalize_client_address(headers) == "198.51.100.2"

    def test_mapped_ipv4_is_unwrapped(self):
        assert normalize_client_address({}, "::ffff:198.51.100.4") == "198.51.100.4"

    @pytest.mark.parametrize("peer", ["127.0.0.1", "::1", "localhost", "::ffff:127.0.0.1"])
    def test_loopback(self, peer):
        assert normalize_client_address({}, peer) == LOCAL_CLIENT

    def test_missing(self):
        assert normalize_client_address({}, None) == UNKNOWN_CLIENT
        assert normalize_client_address({"x-forwarded-for": "  "}, "") == UNKNOWN_CLIENT

    def test_ipv6_is_lowercased(self):
        assert normalize_client_address({}, "2001:DB8::1") == "2001:db8::1"
