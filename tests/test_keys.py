"""
Tests for request cache key derivation.
"""
from types import SimpleNamespace

import pytest
from starlette.requests import Request

from edgecache.shared.caching.keys import (
    build_cache_key,
    is_cacheable_method,
    normalize_path,
    request_user_id,
)


def make_request(path="/api/items", query_string=b"", method="GET", state=None):
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": query_string,
        "headers": [],
        "state": state or {},
    }
    return Request(scope)


class TestCacheableMethods:

    @pytest.mark.parametrize("method", ["GET", "HEAD", "get"])
    def test_reads_are_cacheable(self, method):
        assert is_cacheable_method(method) is True

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
    def test_mutations_are_not(self, method):
        assert is_cacheable_method(method) is False


class TestPathNormalization:

    @pytest.mark.parametrize("path,expected", [
        ("/api/items", "/api/items"),
        ("/api/items/", "/api/items"),
        ("/api//items", "/api/items"),
        ("/", "/"),
        ("//", "/"),
        ("", "/"),
    ])
    def test_normalize_path(self, path, expected):
        assert normalize_path(path) == expected


class TestBuildCacheKey:
    """Test default and custom key derivation."""

    def test_default_key(self):
        assert build_cache_key(make_request()) == "route:/api/items"

    def test_query_is_sorted_and_canonical(self):
        first = make_request(query_string=b"page=2&sort=name")
        second = make_request(query_string=b"sort=name&page=2")

        assert build_cache_key(first) == build_cache_key(second)
        assert build_cache_key(first) == "route:/api/items?page=2&sort=name"

    def test_different_queries_differ(self):
        keys = {
            build_cache_key(make_request(query_string=q))
            for q in [b"", b"page=1", b"page=2", b"page=1&page=2", b"page="]
        }
        assert len(keys) == 5

    def test_blank_values_are_kept(self):
        assert build_cache_key(make_request(query_string=b"q=")) == "route:/api/items?q="

    def test_equivalent_paths_share_a_key(self):
        assert build_cache_key(make_request("/api/items/")) == build_cache_key(make_request("/api//items"))

    def test_encoded_question_mark_in_path_is_not_a_query(self):
        encoded = make_request("/items/x?b=1")
        with_query = make_request("/items/x", query_string=b"b=1")

        assert build_cache_key(encoded) == "route:/items/x%3Fb%3D1"
        assert build_cache_key(encoded) != build_cache_key(with_query)

    def test_path_cannot_mimic_user_suffix(self):
        spoofed = make_request("/api/items:user:alice")
        alice = make_request(state={"user_id": "alice"})

        assert build_cache_key(spoofed, vary_by_user=True) != build_cache_key(alice, vary_by_user=True)

    def test_vary_by_user(self):
        alice = make_request(state={"user_id": "alice"})
        bob = make_request(state={"user_id": "bob"})
        anonymous = make_request()

        alice_key = build_cache_key(alice, vary_by_user=True)
        assert alice_key == "route:/api/items:user:alice"
        assert alice_key != build_cache_key(bob, vary_by_user=True)
        assert build_cache_key(anonymous, vary_by_user=True) == "route:/api/items:anon"

    def test_anonymous_never_matches_authenticated(self):
        anon_user = make_request(state={"user_id": "anon"})
        anonymous = make_request()
        assert build_cache_key(anon_user, vary_by_user=True) != build_cache_key(anonymous, vary_by_user=True)

    def test_user_ignored_without_vary_by_user(self):
        assert build_cache_key(make_request(state={"user_id": "alice"})) == "route:/api/items"

    def test_custom_generator_replaces_default(self):
        request = make_request(query_string=b"page=2", state={"user_id": "alice"})

        key = build_cache_key(request, vary_by_user=True, key_generator=lambda r: "tours:featured")
        assert key == "tours:featured"


class TestRequestUserId:

    def test_user_id_attribute(self):
        assert request_user_id(make_request(state={"user_id": 7})) == "7"

    def test_user_mapping(self):
        assert request_user_id(make_request(state={"user": {"user_id": "u1"}})) == "u1"
        assert request_user_id(make_request(state={"user": {"id": "u2"}})) == "u2"

    def test_user_object(self):
        assert request_user_id(make_request(state={"user": SimpleNamespace(id=3)})) == "3"

    def test_no_identity(self):
        assert request_user_id(make_request()) is None
        assert request_user_id(make_request(state={"user_id": ""})) is None
