"""
Cache Key Builder
Deterministic, user-scoped cache keys for remote images

Handles two problems:
1. Cache busting: signed/tokenized URLs (Firebase Storage, AWS SigV4,
   CloudFront) carry short-lived parameters, so the same image would be
   stored once per token. Volatile parameters are stripped and the rest sorted.
2. Isolation: private images are prefixed with the current user id
   (``u:<user_id>|<normalized_url>``) so one user never sees another user's
   cached content on a shared device.

Key priority (hard contract):
    explicit key  >  user-scoped key (private + user id)  >  normalized URL
"""

from typing import FrozenSet, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


VOLATILE_PARAMS: FrozenSet[str] = frozenset({
    # Firebase Storage
    "token",
    "alt",
    # AWS SigV4 (the x-amz- prefix is matched separately)
    "x-amz-signature",
    "x-amz-credential",
    "x-amz-date",
    "x-amz-expires",
    "x-amz-signedheaders",
    "x-amz-security-token",
    # CloudFront / generic signing
    "expires",
    "signature",
    "key-pair-id",
    "policy",
    # Cache busters
    "t",
    "ts",
    "timestamp",
    "cache_buster",
    "_",
})

AWS_PARAM_PREFIX = "x-amz-"
USER_SCOPE_PREFIX = "u:"


def is_volatile_param(name: str) -> bool:
    """Return True if a query parameter does not affect the image content."""
    lowered = name.lower()
    return lowered in VOLATILE_PARAMS or lowered.startswith(AWS_PARAM_PREFIX)


def normalize_url(url: str) -> str:
    """
    Strip volatile query parameters and sort the remaining ones by name.

    The remaining parameters are always re-sorted, even when nothing was
    removed. Parameters sharing a name keep their relative order. Malformed
    URLs are returned unchanged.

    Example:
        >>> normalize_url("https://x/y.jpg?alt=media&token=abc")
        'https://x/y.jpg'
        >>> normalize_url("https://x/y.jpg?z=1&a=2")
        'https://x/y.jpg?a=2&z=1'
    """
    try:
        parts = urlsplit(url)
        params: List[Tuple[str, str]] = parse_qsl(parts.query, keep_blank_values=True)
    except ValueError:
        return url

    if not params:
        return url

    kept = [(name, value) for name, value in params if not is_volatile_param(name)]
    kept.sort(key=lambda item: item[0])

    query = urlencode(kept) if kept else ""
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def user_scoped_key(url: str, user_id: str) -> str:
    """Build ``u:<user_id>|<normalized_url>``."""
    return f"{USER_SCOPE_PREFIX}{user_id}|{normalize_url(url)}"


def build_cache_key(
    url: str,
    explicit_key: Optional[str] = None,
    user_id: Optional[str] = None,
    is_private: bool = False,
) -> str:
    """
    Build the final cache key for a URL.

    Args:
        url: Image URL
        explicit_key: Caller supplied key; returned as-is when given
        user_id: Current user identity
        is_private: Whether the image is user-private

    Returns:
        Cache key string
    """
    if explicit_key is not None:
        return explicit_key

    if is_private and user_id:
        return user_scoped_key(url, user_id)

    return normalize_url(url)
