"""Minimal chat bot for Multiplayer Piano.

Joins a room, greets it, answers ``!ping`` and prints room activity.

    pip install mpp-client

    python examples/chat_bot.py --room lobby --username "[ PlutoBot ]"

    # Or configure through the environment
    MPP_TOKEN=<token> MPP_ROOM=lobby python examples/chat_bot.py
"""

import argparse
import asyncio
import logging
import signal

from mpp_client import ClientOptions, connect


async def main(options: ClientOptions, verbose: bool):
    stop = asyncio.Event()
    loop = asyncio.get_event_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    async with connect(options) as client:
        if verbose:

            @client.on("debug")
            def show_debug(event):
                print(event.payload["message"])

        print(f"Connected to {client.gateway} as {client.me.name if client.me else '?'}")
        print(f"Room {client.room}: {len(client.roster)} participants")
        await client.chat("yeet")

        async for event in client:
            if event.type == "chat":
                author = event.payload["author"]
                print(f"<{author['name'] or author['id']}> {event.payload['content']}")
                if event.payload["content"].strip() == "!ping":
                    await client.chat(f"pong ({client.clock_offset:.0f} ms clock offset)")
            elif event.type in ("participant_added", "participant_removed"):
                print(f"[{event.type}] {event.payload['name'] or event.payload['id']}")
            elif event.type == "disconnected":
                print("Connection lost, reconnecting...")

            if stop.is_set():
                break


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="MPP chat bot")
    parser.add_argument("--gateway", default=None)
    parser.add_argument("--token", default=None)
    parser.add_argument("--room", default=None)
    parser.add_argument("--username", default=None)
    parser.add_argument("--proxy", default=None, help="http:// or socks5:// proxy URL")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    overrides = {
        key: value
        for key, value in vars(args).items()
        if key != "verbose" and value is not None
    }
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    asyncio.run(main(ClientOptions.from_env(**overrides), args.verbose))
