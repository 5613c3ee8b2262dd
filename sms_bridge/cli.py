"""
Command-line interface for the SMS → Matrix bridge.

Commands:
- run: Start the relay worker (default when no command is given)
- generate-registration: Write an application service registration file
- resolve: Re-resolve one source against the homeserver and fix its index entry

Usage:
    sms-bridge [global options] run
    sms-bridge [global options] generate-registration -f registration.yaml -u http://bridge:8090
    sms-bridge [global options] resolve +15550001111

Global options override the matching BRIDGE_* environment variables.

Exit codes:
    0  normal shutdown
    1  runtime failure
    2  configuration error
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from sms_bridge import __version__
from sms_bridge.common.exceptions import ConfigurationError
from sms_bridge.config.bridge_config import load_bridge_config
from sms_bridge.config.logging_config import setup_logging

log = logging.getLogger("sms_bridge.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2

# Used by generate-registration when neither flag nor environment sets them
DEFAULT_DOMAIN = "sms"
DEFAULT_PREFIX = "sms"
DEFAULT_REGISTRATION_PATH = "kafka-registration.yaml"

# argparse dest -> BridgeConfig field
OVERRIDE_FLAGS = {
    "domain": "domain",
    "prefix": "prefix",
    "homeserver_url": "homeserver_url",
    "registration": "registration_path",
    "target_user": "target_user_id",
    "brokers": "kafka_bootstrap_servers",
    "group_id": "kafka_group_id",
    "topic": "kafka_topic",
}


def config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {field: getattr(args, dest, None) for dest, field in OVERRIDE_FLAGS.items()}


def cmd_run(args: argparse.Namespace) -> int:
    """Run the relay worker until SIGINT/SIGTERM."""
    from sms_bridge.workers.relay_worker import run_worker

    config = load_bridge_config(config_overrides(args))
    asyncio.run(run_worker(config))
    return EXIT_OK


def cmd_generate_registration(args: argparse.Namespace) -> int:
    """
    Write a registration file with fresh tokens.

    Only the prefix is needed; the bot user localpart defaults to it.
    """
    from sms_bridge.infra.matrix.registration import generate_registration

    config = load_bridge_config(config_overrides(args), require_all=False)
    prefix = config.prefix or DEFAULT_PREFIX
    domain = config.domain or DEFAULT_DOMAIN
    path = args.file or config.registration_path or DEFAULT_REGISTRATION_PATH

    registration = generate_registration(prefix=prefix, url=args.url, sender_localpart=args.sender_localpart)
    registration.save(path)

    print(f"Registration written to {path}")
    print(f"Bot user: {registration.bot_user_id(domain)}")
    print("Add this file to the homeserver's app_service_config_files and restart it.")
    return EXIT_OK


def cmd_resolve(args: argparse.Namespace) -> int:
    """Resolve one source with the local index bypassed and print its room id."""
    from sms_bridge.relay.models import normalize_source_id
    from sms_bridge.workers.relay_worker import resolve_source

    config = load_bridge_config(config_overrides(args))
    source_id = normalize_source_id(args.source)
    if not source_id:
        raise ConfigurationError(f"Invalid source id: {args.source!r}")

    room_id = asyncio.run(resolve_source(config, source_id))
    print(f"{source_id} -> {room_id}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sms-bridge",
        description="Relay inbound SMS messages from Kafka into Matrix rooms",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    parser.add_argument("--domain", help="Homeserver domain (BRIDGE_DOMAIN)")
    parser.add_argument("--prefix", help="Alias and user prefix (BRIDGE_PREFIX)")
    parser.add_argument("--homeserver-url", dest="homeserver_url", help="Client-server API URL (BRIDGE_HOMESERVER_URL)")
    parser.add_argument("--registration", help="Registration file path (BRIDGE_REGISTRATION_PATH)")
    parser.add_argument("--target-user", dest="target_user", help="Recipient Matrix account (BRIDGE_TARGET_USER_ID)")
    parser.add_argument("--brokers", help="Kafka bootstrap servers (BRIDGE_KAFKA_BOOTSTRAP_SERVERS)")
    parser.add_argument("--group-id", dest="group_id", help="Kafka consumer group (BRIDGE_KAFKA_GROUP_ID)")
    parser.add_argument("--topic", help="Inbound topic (BRIDGE_KAFKA_TOPIC)")
    parser.add_argument("--log-level", dest="log_level", help="Log level (LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the relay worker")
    run_parser.set_defaults(func=cmd_run)

    registration_parser = subparsers.add_parser(
        "generate-registration",
        help="Generate an application service registration file",
    )
    registration_parser.add_argument("-f", "--file", help="Output path")
    registration_parser.add_argument("-u", "--url", default="", help="URL the homeserver uses to reach the bridge")
    registration_parser.add_argument(
        "--sender-localpart",
        dest="sender_localpart",
        default="",
        help="Bot user localpart (defaults to the prefix)",
    )
    registration_parser.set_defaults(func=cmd_generate_registration)

    resolve_parser = subparsers.add_parser(
        "resolve",
        help="Revalidate one source's room against the homeserver",
    )
    resolve_parser.add_argument("source", help="External source id, e.g. +15550001111")
    resolve_parser.set_defaults(func=cmd_resolve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        args.func = cmd_run

    setup_logging(service_name="sms_bridge", log_level=args.log_level)

    try:
        return args.func(args)
    except ConfigurationError as e:
        log.error(f"Configuration error: {e}")
        return EXIT_CONFIG
    except KeyboardInterrupt:
        log.info("Interrupted")
        return EXIT_OK
    except Exception as e:
        log.error(f"Bridge crashed: {e}", exc_info=True)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
