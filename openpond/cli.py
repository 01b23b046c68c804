"""
Command line interface for OpenPond.

    openpond keygen
    openpond agents
    openpond agent <agent_id>
    openpond send <recipient> <content> [--reply-to ID] [--metadata JSON]
    openpond listen
"""

import sys
import json
import asyncio
import argparse
import logging
from pathlib import Path
from typing import Optional, List

from .client import OpenPondClient
from .config import OpenPondConfig, CONFIG_FILE
from .errors import OpenPondError
from .identity import generate_private_key, parse_private_key, derive_agent_id
from .models import Message, SendOptions

logger = logging.getLogger("openpond")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openpond",
        description="OpenPond P2P network client",
    )
    parser.add_argument("--config", type=Path, default=None,
                        help=f"Config file (default: {CONFIG_FILE} if it exists)")
    parser.add_argument("--api-url", default=None, help="API base URL")
    parser.add_argument("--agent-name", default=None, help="Agent name used for registration")
    parser.add_argument("--log-level", default=None, help="Logging level (default: from config)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("keygen", help="Generate a new private key")
    subparsers.add_parser("agents", help="List registered agents")

    agent = subparsers.add_parser("agent", help="Show one agent")
    agent.add_argument("agent_id")

    send = subparsers.add_parser("send", help="Send a message")
    send.add_argument("recipient")
    send.add_argument("content")
    send.add_argument("--reply-to", default=None)
    send.add_argument("--metadata", default=None, help="JSON object attached to the message")

    listen = subparsers.add_parser("listen", help="Print incoming messages until interrupted")
    listen.add_argument("--no-stream", action="store_true", help="Poll instead of streaming")

    return parser


def load_config(args: argparse.Namespace) -> OpenPondConfig:
    """Build configuration from file and command line flags."""
    path = args.config
    if path is None and CONFIG_FILE.exists():
        path = CONFIG_FILE

    config = OpenPondConfig.load(path) if path is not None else OpenPondConfig.default()

    if args.api_url:
        config.api_url = args.api_url
    if args.agent_name:
        config.agent_name = args.agent_name
    if getattr(args, "no_stream", False):
        config.use_stream = False
    return config


def print_message(message: Message) -> None:
    print(f"\n{'='*50}")
    print(f"MESSAGE {message.id} from {message.sender}")
    print(f"   Time: {message.timestamp.isoformat()}")
    if message.reply_to:
        print(f"   Reply to: {message.reply_to}")
    print(f"   Content: {message.content}")
    print(f"{'='*50}")


def cmd_keygen() -> int:
    key = generate_private_key()
    agent_id = derive_agent_id(bytes(parse_private_key(key).verify_key))
    print(f"Private key: {key}")
    print(f"Agent ID:    {agent_id}")
    print("\nKeep the private key secret. Export it as OPENPOND_PRIVATE_KEY to use it.")
    return 0


async def cmd_agents(client: OpenPondClient) -> int:
    agents = await client.list_agents()
    for agent in agents:
        print(f"  {agent.name or '(unnamed)'}  {agent.id}")
    print(f"\n{len(agents)} agent(s)")
    return 0


async def cmd_agent(client: OpenPondClient, agent_id: str) -> int:
    agent = await client.get_agent(agent_id)
    print(json.dumps(agent.to_dict(), indent=2))
    return 0


async def cmd_send(client: OpenPondClient, args: argparse.Namespace) -> int:
    metadata = None
    if args.metadata:
        try:
            metadata = json.loads(args.metadata)
        except json.JSONDecodeError as e:
            print(f"Invalid --metadata JSON: {e}", file=sys.stderr)
            return 2
        if not isinstance(metadata, dict):
            print("--metadata must be a JSON object", file=sys.stderr)
            return 2

    options = SendOptions(reply_to=args.reply_to, metadata=metadata)
    message_id = await client.send_message(args.recipient, args.content, options)
    print(f"Sent: {message_id}")
    return 0


async def cmd_listen(client: OpenPondClient) -> int:
    client.on_message(print_message)
    client.on_error(lambda error: logger.warning(f"Background error: {error}"))
    client.on_connection_change(lambda state: logger.info(f"Connection: {state.value} ({state.mode})"))

    await client.start()
    print(f"\nListening as {client.agent_id or 'hosted agent'}. Press Ctrl+C to stop.\n")
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await client.stop()


async def run(args: argparse.Namespace, config: OpenPondConfig) -> int:
    client = OpenPondClient(config)
    try:
        if args.command == "agents":
            return await cmd_agents(client)
        if args.command == "agent":
            return await cmd_agent(client, args.agent_id)
        if args.command == "send":
            return await cmd_send(client, args)
        if args.command == "listen":
            return await cmd_listen(client)
        return 2
    finally:
        await client.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "keygen":
        return cmd_keygen()

    try:
        config = load_config(args)
    except (OSError, json.JSONDecodeError, TypeError) as e:
        print(f"Could not load config: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=(args.log_level or config.log_level).upper(),
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
        datefmt='%H:%M:%S',
    )

    try:
        return asyncio.run(run(args, config))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0
    except OpenPondError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
