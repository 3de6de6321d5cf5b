#!/usr/bin/env python3
"""
calfed CLI

Command-line tools for inspecting federation:
  calfed resolve - Look up a remote calendar's actor
  calfed keygen - Generate a key pair for a calendar
  calfed webfinger - Print a local calendar's WebFinger document
  calfed actor - Print a local calendar's actor document

Usage:
  calfed resolve <user@domain> [--config <file>]
  calfed keygen <calendar_id> --out <dir>
  calfed webfinger <calendar_id> (--config <file> | --domain <domain>) [--store-dir <dir>]
  calfed actor <calendar_id> (--config <file> | --domain <domain>) [--store-dir <dir>]
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import httpx

from .activitypub.actor import CalendarActorStore, FederationUrls, generate_keypair
from .activitypub.resolver import ActorResolver
from .cache import ActorCache
from .config import FederationConfig
from .errors import FederationError
from .netguard import UrlGuard


def load_config(args) -> FederationConfig:
    """Config from --config, or a default one for --domain."""
    if args.config:
        return FederationConfig.from_file(args.config)
    if getattr(args, "domain", None):
        return FederationConfig(domain=args.domain)
    raise ValueError("Either --config or --domain is required")


async def _resolve(handle: str, config: FederationConfig) -> dict:
    guard = UrlGuard(config.allow_insecure_localhost, config.check_dns)
    cache = ActorCache(ttl=config.actor_cache_ttl, max_size=config.actor_cache_max_size)
    async with httpx.AsyncClient(headers={"User-Agent": config.user_agent}) as client:
        resolver = ActorResolver(client, cache, guard, config.resolve_timeout)
        actor = await resolver.resolve(handle)
    return actor.to_dict()


def cmd_resolve(args):
    """Resolve a remote calendar and print its actor."""
    config = FederationConfig.from_file(args.config) if args.config else FederationConfig(
        domain="localhost", allow_insecure_localhost=args.insecure_localhost,
    )
    actor = asyncio.run(_resolve(args.handle, config))
    print(json.dumps(actor, indent=2))


def cmd_keygen(args):
    """Write a PEM key pair for a calendar."""
    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    private_path = out_dir / f"{args.calendar_id}.pem"
    public_path = out_dir / f"{args.calendar_id}.pub.pem"
    if private_path.exists() and not args.force:
        raise ValueError(f"{private_path} already exists (use --force to overwrite)")

    private_pem, public_pem = generate_keypair()
    private_path.write_bytes(private_pem)
    private_path.chmod(0o600)
    public_path.write_bytes(public_pem)

    print(f"Private key: {private_path}")
    print(f"Public key:  {public_path}")


def _local_actor(args):
    config = load_config(args)
    actors = CalendarActorStore(FederationUrls(config.base_url), args.store_dir)
    return actors.get_or_create(args.calendar_id)


def cmd_webfinger(args):
    """Print a local calendar's WebFinger document."""
    print(json.dumps(_local_actor(args).webfinger(), indent=2))


def cmd_actor(args):
    """Print a local calendar's actor document."""
    print(json.dumps(_local_actor(args).to_activitypub(), indent=2))


def _add_local_options(parser):
    parser.add_argument("calendar_id", help="Local calendar id")
    parser.add_argument("--config", help="Federation config YAML file")
    parser.add_argument("--domain", help="Public domain of this server")
    parser.add_argument("--store-dir", help="Directory holding calendar keys")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="calfed",
        description="calfed - Calendar federation tools",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # resolve command
    resolve_parser = subparsers.add_parser("resolve", help="Resolve a remote calendar")
    resolve_parser.add_argument("handle", help="Remote calendar: user@domain")
    resolve_parser.add_argument("--config", help="Federation config YAML file")
    resolve_parser.add_argument("--insecure-localhost", action="store_true",
                                help="Allow plain http to localhost (development)")

    # keygen command
    keygen_parser = subparsers.add_parser("keygen", help="Generate a calendar key pair")
    keygen_parser.add_argument("calendar_id", help="Calendar id (used in file names)")
    keygen_parser.add_argument("--out", required=True, help="Output directory")
    keygen_parser.add_argument("--force", action="store_true", help="Overwrite existing keys")

    # webfinger command
    webfinger_parser = subparsers.add_parser("webfinger", help="Print a WebFinger document")
    _add_local_options(webfinger_parser)

    # actor command
    actor_parser = subparsers.add_parser("actor", help="Print an actor document")
    _add_local_options(actor_parser)

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "resolve": cmd_resolve,
        "keygen": cmd_keygen,
        "webfinger": cmd_webfinger,
        "actor": cmd_actor,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    try:
        command(args)
    except FederationError as e:
        print(f"Error ({e.kind}): {e.message}", file=sys.stderr)
        return 1
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
