"""
Cache key unit tests

Covers:
- normalize_url: volatile parameter stripping, sorting, fragments, malformed input
- user_scoped_key / build_cache_key: key priority and user isolation
"""

import pytest

from imgcache.caching.cache_key import (
    USER_SCOPE_PREFIX,
    build_cache_key,
    is_volatile_param,
    normalize_url,
    user_scoped_key,
)


# ============================================================
# normalize_url
# ============================================================

class TestNormalizeUrl:
    """normalize_url tests"""

    def test_strips_firebase_token(self):
        assert normalize_url("https://x/y.jpg?alt=media&token=abc") == "https://x/y.jpg"

    def test_sorts_remaining_params(self):
        assert normalize_url("https://x/y.jpg?z=1&a=2") == "https://x/y.jpg?a=2&z=1"

    def test_keeps_content_params_and_drops_volatile(self):
        url = "https://cdn.example.com/img.png?w=200&token=secret&h=100&ts=12345"
        assert normalize_url(url) == "https://cdn.example.com/img.png?h=100&w=200"

    def test_strips_any_aws_prefixed_param(self):
        url = (
            "https://bucket.s3.amazonaws.com/a.jpg"
            "?X-Amz-Algorithm=AWS4-HMAC-SHA256&X-Amz-Signature=deadbeef&size=large"
        )
        assert normalize_url(url) == "https://bucket.s3.amazonaws.com/a.jpg?size=large"

    def test_cloudfront_signing_params(self):
        url = "https://d111.cloudfront.net/a.jpg?Expires=1&Signature=s&Key-Pair-Id=k"
        assert normalize_url(url) == "https://d111.cloudfront.net/a.jpg"

    def test_url_without_query_is_unchanged(self):
        assert normalize_url("https://x/y.jpg") == "https://x/y.jpg"

    def test_fragment_is_kept(self):
        assert normalize_url("https://x/y.jpg?b=1&a=2#frag") == "https://x/y.jpg?a=2&b=1#frag"

    def test_duplicate_names_keep_relative_order(self):
        assert normalize_url("https://x/y.jpg?b=2&a=1&b=1") == "https://x/y.jpg?a=1&b=2&b=1"

    def test_blank_values_are_kept(self):
        assert normalize_url("https://x/y.jpg?a=&token=t") == "https://x/y.jpg?a="

    def test_malformed_url_returned_unchanged(self):
        url = "http://[::1/a.jpg?token=1"
        assert normalize_url(url) == url

    def test_different_tokens_collapse_to_one_key(self):
        a = normalize_url("https://x/y.jpg?token=one&v=2")
        b = normalize_url("https://x/y.jpg?v=2&token=two")
        assert a == b == "https://x/y.jpg?v=2"

    def test_idempotent(self):
        url = "https://cdn.example.com/a.jpg?z=1&token=t&a=2&X-Amz-Date=now"
        once = normalize_url(url)
        assert normalize_url(once) == once

    @pytest.mark.parametrize("query", ["z=1&a=2&m=3", "a=2&m=3&z=1", "m=3&z=1&a=2"])
    def test_parameter_order_does_not_matter(self, query):
        assert normalize_url(f"https://x/y.jpg?{query}") == "https://x/y.jpg?a=2&m=3&z=1"

    @pytest.mark.parametrize("name", ["token", "TOKEN", "x-amz-date", "X-Amz-Anything", "_", "cache_buster"])
    def test_volatile_names(self, name):
        assert is_volatile_param(name)

    @pytest.mark.parametrize("name", ["w", "h", "size", "version", "id"])
    def test_content_names(self, name):
        assert not is_volatile_param(name)


# ============================================================
# Key priority
# ============================================================

class TestBuildCacheKey:
    """build_cache_key priority tests"""

    def test_user_scoped_key_format(self):
        key = user_scoped_key("https://x/me.jpg?token=1", "42")
        assert key == "u:42|https://x/me.jpg"
        assert key.startswith(USER_SCOPE_PREFIX)

    def test_explicit_key_wins(self):
        key = build_cache_key("https://x/y.jpg", explicit_key="custom", user_id="42", is_private=True)
        assert key == "custom"

    def test_private_with_user_is_scoped(self):
        key = build_cache_key("https://x/y.jpg?token=1", user_id="42", is_private=True)
        assert key == "u:42|https://x/y.jpg"
        assert "token" not in key

    def test_private_without_user_falls_back_to_url(self):
        key = build_cache_key("https://x/y.jpg?token=1", user_id=None, is_private=True)
        assert key == "https://x/y.jpg"

    def test_public_image_ignores_user(self):
        key = build_cache_key("https://x/y.jpg", user_id="42", is_private=False)
        assert key == "https://x/y.jpg"

    def test_two_users_never_share_private_keys(self):
        url = "https://api.example.com/me/avatar.png"
        assert build_cache_key(url, user_id="alice", is_private=True) != build_cache_key(
            url, user_id="bob", is_private=True
        )
