"""
Command-line peer.

    netdrops-peer receive [--auto-accept]
    netdrops-peer send "Brave Cat" photo1.jpg photo2.jpg
"""

import argparse
import asyncio
import logging

from netdrops.client.peer import PeerClient
from netdrops.config import COORDINATOR_URL, DEFAULT_SAVE_DIR
from netdrops.protocol.errors import NetdropsError


async def _ask(question: str) -> bool:
    answer = await asyncio.to_thread(input, f"{question} [y/N] ")
    return answer.strip().lower() in ("y", "yes")


async def run_receive(client: PeerClient, auto_accept: bool) -> None:
    prompts: set[asyncio.Task] = set()

    async def decide(request: dict) -> None:
        accepted = auto_accept or await _ask(
            f"{request.get('senderNickname')} wants to send you photos. Accept?"
        )
        try:
            client.respond(request["senderSessionId"], accepted)
        except NetdropsError as e:
            print(f"Could not answer [{e.code.value}]: {e.message}")

    async def on_event(event: str, data) -> None:
        if event == "transfer_request":
            # Prompt off the read loop so other traffic keeps flowing
            task = asyncio.create_task(decide(data))
            prompts.add(task)
            task.add_done_callback(prompts.discard)
        elif event == "file_received":
            path = await client.save_file(data)
            print(f"Saved {path}")
        elif event == "notification":
            print(f"[{data['code']}] {data['message']}")

    client.on_event(on_event)
    await client.connect()
    print(f"Waiting for transfers as '{client.nickname}'. Press Ctrl+C to stop.")
    await client.wait_closed()


async def run_send(client: PeerClient, target_key: str, files: list[str],
                   wait: float) -> int:
    decided: asyncio.Future = asyncio.get_running_loop().create_future()
    peer_seen = asyncio.Event()

    async def on_event(event: str, data) -> None:
        if event == "peer_list" and client.find_peer(target_key):
            peer_seen.set()
        elif event == "transfer_response" and not decided.done():
            decided.set_result(data["accepted"])
        elif event == "notification":
            print(f"[{data['code']}] {data['message']}")
            if data.get("target") and not decided.done() and data["code"] in (
                "target_unavailable", "request_expired", "busy",
            ):
                decided.set_result(False)

    client.on_event(on_event)
    await client.connect()
    try:
        await asyncio.wait_for(peer_seen.wait(), timeout=wait)
    except asyncio.TimeoutError:
        print(f"No peer named '{target_key}' is online")
        return 1

    target = client.find_peer(target_key)
    if target is None:
        print(f"'{target_key}' went offline")
        return 1
    client.request_transfer(target.session_id)
    print(f"Asked {target.nickname} for permission...")
    if not await decided:
        print("The transfer was not accepted")
        return 1

    file_ids = await client.send_files(target.session_id, files)
    print(f"Sent {len(file_ids)} file(s) to {target.nickname}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="netdrops-peer")
    parser.add_argument("--url", default=COORDINATOR_URL, help="Coordinator WebSocket URL")
    parser.add_argument("--save-dir", default=DEFAULT_SAVE_DIR, help="Where received files go")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    receive = commands.add_parser("receive", help="Wait for incoming photos")
    receive.add_argument("--auto-accept", action="store_true", help="Accept every request")

    send = commands.add_parser("send", help="Send photos to a peer")
    send.add_argument("target", help="Nickname or session id of the receiver")
    send.add_argument("files", nargs="+", help="Files to send")
    send.add_argument("--wait", type=float, default=10.0,
                      help="Seconds to wait for the receiver to appear")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    async def run() -> int:
        client = PeerClient(url=args.url, save_dir=args.save_dir)
        try:
            if args.command == "receive":
                await run_receive(client, args.auto_accept)
                return 0
            return await run_send(client, args.target, args.files, args.wait)
        finally:
            await client.close()

    try:
        return asyncio.run(run())
    except NetdropsError as e:
        print(f"Error [{e.code.value}]: {e.message}")
        return 1
    except OSError as e:
        print(f"Could not reach the coordinator at {args.url}: {e}")
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
