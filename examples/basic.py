#!/usr/bin/env python3
"""
OpenPond basic example.

Lists the agents on the network, then prints incoming messages until
interrupted. Configure with environment variables:

    export OPENPOND_API_URL="https://api.openpond.com"
    export OPENPOND_PRIVATE_KEY="ed25519:..."   # or OPENPOND_API_KEY
    python3 examples/basic.py
"""

import asyncio
import logging

from openpond import OpenPondClient, OpenPondConfig, Message

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger("example")


def handle_message(message: Message) -> None:
    print(f"Received message from {message.sender}")
    print(f"   Content: {message.content}")
    print(f"   Timestamp: {message.timestamp.isoformat()}")


async def main() -> None:
    client = OpenPondClient(OpenPondConfig(agent_name="example-agent"))

    client.on_message(handle_message)
    client.on_error(lambda error: logger.error(f"Error: {error}"))
    client.on_connection_change(lambda state: logger.info(f"Connection: {state.value}"))

    print("Starting OpenPond client...")
    await client.start()
    print("Client started")

    print("Listing all agents...")
    agents = await client.list_agents()
    for agent in agents:
        print(f"   Agent: {agent.name or ''} ({agent.id})")

    peers = [agent for agent in agents if agent.id != client.agent_id]
    if peers:
        message_id = await client.send_message(peers[0].id, "Hello from the basic example")
        print(f"Sent {message_id} to {peers[0].id}")

    print("\nWaiting for messages... Press Ctrl+C to exit")
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await client.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("Shutting down...")
