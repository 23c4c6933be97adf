"""
imgcache Command Line Interface

Examples:
  imgcache fetch https://cdn.example.com/a.jpg --bucket thumbnail -o a.jpg
  imgcache fetch https://api.example.com/me.png --bucket avatar --private --user 42
  imgcache prune
  imgcache policies
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

from loguru import logger

from imgcache.caching.bucket_policy import Bucket
from imgcache.caching.errors import ImageCacheError
from imgcache.caching.metrics import MetricsCollector, fan_out, log_metrics_sink
from imgcache.caching.registry import CacheRegistry
from imgcache.config.config_loader import ConfigLoader, setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imgcache",
        description="imgcache - Resilient Image Cache",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  imgcache fetch URL              Fetch one image through the cache
  imgcache prune                  Delete obsolete cache generations
  imgcache policies               Show effective bucket policies
        """
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    fetch = subparsers.add_parser("fetch", help="Fetch an image through the cache")
    fetch.add_argument("url", help="Image URL")
    fetch.add_argument(
        "--bucket",
        choices=[bucket.value for bucket in Bucket],
        default=Bucket.CONTENT.value,
        help="Cache bucket (default: content)"
    )
    fetch.add_argument("--private", action="store_true", help="Scope the cache key to --user")
    fetch.add_argument("--user", type=str, default=None, help="Current user id")
    fetch.add_argument("-o", "--output", type=str, default=None, help="Write image bytes to this file")

    subparsers.add_parser("prune", help="Delete obsolete cache generations")
    subparsers.add_parser("policies", help="Show effective bucket policies")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # Set config path if provided
    if args.config:
        os.environ["IMGCACHE_CONFIG_PATH"] = args.config

    config = ConfigLoader().config
    setup_logging(config.system.log_level, config.system.log_file)

    if args.command == "fetch":
        return asyncio.run(run_fetch(args, CacheRegistry(config)))
    if args.command == "prune":
        return run_prune(CacheRegistry(config))
    if args.command == "policies":
        return run_policies(CacheRegistry(config))
    return 1


async def run_fetch(args, registry: CacheRegistry) -> int:
    """Fetch one image and report what the fetch layer observed."""
    collector = MetricsCollector()
    registry.initialize(user_id=args.user, metrics_sink=fan_out(collector, log_metrics_sink))

    try:
        data = await registry.get_bytes(args.url, Bucket(args.bucket), is_private=args.private)
    except ImageCacheError as e:
        logger.error(f"Fetch failed: {e}")
        print(f"Failed: {e}")
        return 1
    finally:
        await registry.close()

    print(f"Fetched {len(data)} bytes ({args.bucket})")
    if args.output:
        Path(args.output).write_bytes(data)
        print(f"Written to {args.output}")

    stats = collector.get_stats()
    print("\nEvents:")
    for kind, count in stats["events"].items():
        if count:
            print(f"  {kind}: {count}")
    return 0


def run_prune(registry: CacheRegistry) -> int:
    """Delete storage directories of older policy versions."""
    deleted = registry.prune_old_versions()
    if not deleted:
        print("Nothing to prune")
    for path in deleted:
        print(f"Deleted {path}")
    return 0


def run_policies(registry: CacheRegistry) -> int:
    """Print the effective policy table."""
    print("=" * 50)
    print("Bucket Policies")
    print("=" * 50)
    for bucket, policy in registry.policies.items():
        print(f"\n{bucket.value} ({policy.versioned_key})")
        print(f"  root: {registry.roots.root_for(bucket)}")
        print(f"  stale_after: {policy.stale_after}")
        print(f"  max_objects: {policy.max_objects}")
        print(f"  freshness: {policy.min_fresh} .. {policy.max_fresh}")
        print(f"  max_concurrent_fetches: {policy.max_concurrent_fetches}")
        print(f"  timeouts: response {policy.response_timeout}, stream {policy.stream_timeout}")
        print(f"  max_retry_attempts: {policy.max_retry_attempts}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
