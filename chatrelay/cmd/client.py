from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Any, Dict, List, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect

from chatrelay.core import proto
from chatrelay.core.errors import RelayError

log = logging.getLogger("chatrelay.cmd.client")

HELP = "Commands: /start <phone>, /list, /use <n>, /history, /quit; other text is sent to the selected chat"


class ClientApp:
    def __init__(self, server_url: str, phone: str, name: str, avatar: str = "") -> None:
        self.server_url = server_url
        self.phone = phone
        self.name = name
        self.avatar = avatar

        self.ws: Optional[ClientConnection] = None
        self.identity: Dict[str, Any] = {}
        self.conversations: List[Dict[str, Any]] = []
        self.current: Optional[Dict[str, Any]] = None
        self.stop_event = asyncio.Event()

    async def run(self) -> None:
        async with connect(self.server_url) as ws:
            self.ws = ws
            await self._send_frame(
                proto.T_JOIN,
                {"contact_address": self.phone, "display_name": self.name, "avatar_ref": self.avatar},
            )
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print(f"chatrelay client ready. {HELP}")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                await self._handle_command(line)
            else:
                await self._cmd_send(line)

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/start" and len(parts) == 2:
            await self._send_frame(proto.T_START_CONVERSATION, {"peer_contact_address": parts[1]})
        elif cmd == "/list":
            self._print_conversations()
        elif cmd == "/use" and len(parts) == 2 and parts[1].isdigit():
            self._select(int(parts[1]))
        elif cmd == "/history":
            if self.current is None:
                print("No conversation selected; use /use <n>")
                return
            await self._send_frame(proto.T_FETCH_HISTORY, {"conversation_id": self.current["id"]})
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print(f"Unknown command. {HELP}")

    async def _cmd_send(self, text: str) -> None:
        if self.current is None:
            print("No conversation selected; use /use <n>")
            return
        await self._send_frame(proto.T_SEND_MESSAGE, {"conversation_id": self.current["id"], "body": text})

    def _select(self, index: int) -> None:
        if not 1 <= index <= len(self.conversations):
            print("No such conversation")
            return
        self.current = self.conversations[index - 1]
        print(f"Chatting with {self.current['name']} ({self.current['contact_address']})")

    async def _rx_loop(self) -> None:
        assert self.ws is not None
        try:
            async for raw in self.ws:
                try:
                    env = proto.decode_frame(raw)
                except RelayError:
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                self._handle_incoming(env)
        except websockets.ConnectionClosed:
            print("Connection closed by server")
        finally:
            self.stop_event.set()

    def _handle_incoming(self, env: proto.Envelope) -> None:
        payload = env.payload
        if env.type == proto.T_JOINED:
            self.identity = payload.get("identity", {})
            print(f"Joined as {self.identity.get('display_name')} ({self.identity.get('contact_address')})")
        elif env.type == proto.T_CONVERSATION_SUMMARIES:
            self.conversations = payload.get("conversations", [])
            self._print_conversations()
        elif env.type == proto.T_CONVERSATION_STARTED:
            peer = payload.get("peer", {})
            print(f"Conversation ready with {peer.get('display_name')}")
        elif env.type == proto.T_NEW_MESSAGE:
            self._print_message(payload.get("message", {}))
        elif env.type == proto.T_MESSAGE_HISTORY:
            for msg in payload.get("messages", []):
                self._print_message(msg)
        elif env.type == proto.T_PRESENCE_SNAPSHOT:
            names = ", ".join(u.get("display_name", "?") for u in payload.get("users", []))
            print(f"Online: {names or '(nobody)'}")
        elif env.type == proto.T_ERROR:
            print(f"[error] {payload.get('code')}: {payload.get('detail')}")
        else:
            log.debug("Ignored frame %s", env.type)

    def _print_conversations(self) -> None:
        if not self.conversations:
            print("No conversations yet; /start <phone>")
            return
        for i, conv in enumerate(self.conversations, 1):
            last = conv.get("last_message") or ""
            print(f"  {i}. {conv.get('name')} ({conv.get('contact_address')}) {last}")

    def _print_message(self, msg: Dict[str, Any]) -> None:
        mine = msg.get("sender_id") == self.identity.get("id")
        who = "me" if mine else msg.get("sender_display_name", "?")
        print(f"[{msg.get('conversation_id', '')[:8]}] {who}: {msg.get('body')}")

    async def _send_frame(self, type_: str, payload: Dict[str, Any]) -> None:
        assert self.ws is not None
        frame = proto.build_frame(type_, self.identity.get("id", ""), "server", payload)
        await self.ws.send(proto.encode_frame(frame))


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="chatrelay client")
    parser.add_argument("--server", required=True, help="ws://host:port of the chatrelay server")
    parser.add_argument("--phone", required=True, help="Your contact address (phone number)")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--avatar", default="", help="Avatar URL")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = ClientApp(args.server, args.phone, args.name, args.avatar)
    await app.run()


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
