"""
Cache Bucket Policies
Per-category retention, freshness, timeout and concurrency rules

Separate buckets prevent cache thrashing: small important images (avatars,
icons) are never evicted by large noisy feed content.

Defaults are tuned for slow, lossy, expensive networks:
- longer timeouts and more retries
- generous retention (offline-first)
- low per-bucket concurrency so downloads do not starve each other
"""

import re
from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum
from typing import Dict, Mapping, Optional, TYPE_CHECKING

from imgcache.caching.errors import ConfigError

if TYPE_CHECKING:
    from imgcache.config.config_loader import BucketOverride


VERSIONED_KEY_PATTERN = re.compile(r"^(?P<name>.+)-v(?P<version>\d+)$")


class Bucket(str, Enum):
    """Image cache buckets."""
    AVATAR = "avatar"          # user avatars; long-lived, persistent
    ICON = "icon"              # icons, badges, logos; almost permanent
    THUMBNAIL = "thumbnail"    # list/grid thumbnails; high volume
    CONTENT = "content"        # feed photos; high churn
    BANNER = "banner"          # hero images; heavy, low concurrency

    @property
    def is_long_lived(self) -> bool:
        """Long-lived buckets live under the persistent storage root."""
        return self in (Bucket.AVATAR, Bucket.ICON)


# Buckets expected to hold user-identifiable content; wiped on logout
USER_BUCKETS = (Bucket.AVATAR, Bucket.CONTENT)


@dataclass(frozen=True)
class BucketPolicy:
    """
    Rules of engagement for one bucket.

    Invariants: min_fresh < max_fresh < stale_after, max_objects > 0,
    max_concurrent_fetches > 0, versioned_key matches ``<name>-v<N>``.
    """
    versioned_key: str
    stale_after: timedelta
    max_objects: int
    min_fresh: timedelta
    max_fresh: timedelta
    max_concurrent_fetches: int
    response_timeout: timedelta = timedelta(seconds=15)
    stream_timeout: timedelta = timedelta(seconds=45)
    max_retry_attempts: int = 4

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ConfigError if an invariant does not hold."""
        if not VERSIONED_KEY_PATTERN.match(self.versioned_key):
            raise ConfigError(f"versioned_key must match '<name>-v<N>': {self.versioned_key!r}")
        if not self.min_fresh < self.max_fresh < self.stale_after:
            raise ConfigError(
                f"{self.versioned_key}: require min_fresh < max_fresh < stale_after "
                f"(got {self.min_fresh}, {self.max_fresh}, {self.stale_after})"
            )
        if self.max_objects <= 0:
            raise ConfigError(f"{self.versioned_key}: max_objects must be > 0")
        if self.max_concurrent_fetches <= 0:
            raise ConfigError(f"{self.versioned_key}: max_concurrent_fetches must be > 0")
        if self.max_retry_attempts <= 0:
            raise ConfigError(f"{self.versioned_key}: max_retry_attempts must be > 0")
        if self.response_timeout <= timedelta(0) or self.stream_timeout <= timedelta(0):
            raise ConfigError(f"{self.versioned_key}: timeouts must be positive")

    @property
    def name_prefix(self) -> str:
        """``img-avatar-v1`` -> ``img-avatar-v``; used by the version sweep."""
        return self.versioned_key[: self.versioned_key.rindex("-v") + 2]

    @property
    def version(self) -> int:
        return int(VERSIONED_KEY_PATTERN.match(self.versioned_key).group("version"))

    def with_override(self, override: Optional["BucketOverride"]) -> "BucketPolicy":
        """Apply a config override (durations in seconds); re-validates."""
        if override is None:
            return self

        changes = {}
        for field_name, value in override.model_dump(exclude_none=True).items():
            if field_name in ("stale_after", "min_fresh", "max_fresh", "response_timeout", "stream_timeout"):
                changes[field_name] = timedelta(seconds=value)
            else:
                changes[field_name] = value
        return replace(self, **changes)


DEFAULT_POLICIES: Mapping[Bucket, BucketPolicy] = {
    Bucket.AVATAR: BucketPolicy(
        versioned_key="img-avatar-v1",
        stale_after=timedelta(days=180),
        max_objects=2000,
        min_fresh=timedelta(hours=12),
        max_fresh=timedelta(days=30),
        max_concurrent_fetches=4,
    ),
    Bucket.ICON: BucketPolicy(
        versioned_key="img-icon-v1",
        stale_after=timedelta(days=365),
        max_objects=500,
        min_fresh=timedelta(days=30),
        max_fresh=timedelta(days=90),
        max_concurrent_fetches=4,
    ),
    Bucket.THUMBNAIL: BucketPolicy(
        versioned_key="img-thumb-v1",
        stale_after=timedelta(days=60),
        max_objects=3000,
        min_fresh=timedelta(days=3),
        max_fresh=timedelta(days=14),
        max_concurrent_fetches=6,
    ),
    Bucket.CONTENT: BucketPolicy(
        versioned_key="img-content-v1",
        stale_after=timedelta(days=30),
        max_objects=1000,
        min_fresh=timedelta(days=1),
        max_fresh=timedelta(days=7),
        max_concurrent_fetches=4,
        stream_timeout=timedelta(seconds=60),  # larger files
    ),
    Bucket.BANNER: BucketPolicy(
        versioned_key="img-banner-v1",
        stale_after=timedelta(days=90),
        max_objects=200,
        min_fresh=timedelta(days=7),
        max_fresh=timedelta(days=30),
        max_concurrent_fetches=2,  # fewer, larger downloads
        stream_timeout=timedelta(seconds=60),
    ),
}


def resolve_policies(
    overrides: Optional[Mapping[str, "BucketOverride"]] = None,
) -> Dict[Bucket, BucketPolicy]:
    """
    Build the effective policy table.

    Args:
        overrides: Bucket name -> override, usually ``Config.buckets``

    Returns:
        Policy per bucket
    """
    overrides = overrides or {}
    unknown = set(overrides) - {bucket.value for bucket in Bucket}
    if unknown:
        raise ConfigError(f"Unknown bucket(s) in configuration: {sorted(unknown)}")

    return {
        bucket: policy.with_override(overrides.get(bucket.value))
        for bucket, policy in DEFAULT_POLICIES.items()
    }
