"""
client.py
----------
Terminal client for the relay chat server.

Commands:
- plain text            send a chat message to everyone
- /name <new name>      change display name
- /send <path> [id]     upload a file (to one connection id, or everyone)
- /whoami               print this connection's id
- /quit                 disconnect
"""

import asyncio, websockets, json, argparse, base64, os, threading, time, uuid
from typing import Optional
from urllib.parse import urlsplit

from config import DEFAULT_MAX_FILE_SIZE
from transfer import format_size


def now_ms() -> int:
    """Return the current UNIX timestamp in milliseconds."""
    return int(time.time() * 1000)


def frame(mtype: str, payload: dict) -> str:
    return json.dumps({"type": mtype, "id": uuid.uuid4().hex, "ts": now_ms(), "payload": payload})


def http_base(server_url: str) -> str:
    """ws://host:port/... -> http://host:port (wss -> https)."""
    parts = urlsplit(server_url)
    scheme = "https" if parts.scheme == "wss" else "http"
    return f"{scheme}://{parts.netloc}"


def format_event(msg: dict, base_url: str) -> Optional[str]:
    """Render one server frame as a console line (None for frames not shown)."""
    mtype = msg.get("type")
    p = msg.get("payload", {}) or {}
    if mtype == "CHAT_MESSAGE":
        if p.get("system"):
            return f"*** {p.get('text')}"
        return f"{p.get('sender')}: {p.get('text')}"
    if mtype == "PRESENCE_UPDATE":
        return "[online] " + ", ".join(p.get("users", []))
    if mtype == "FILE_NOTIFICATION":
        return f"[file] {p.get('sender')} shared {p.get('file_name')}: {base_url}{p.get('file_url')}"
    if mtype == "ERROR":
        return f"[error] {p.get('message') or p.get('code')}"
    return None


def read_upload(path: str) -> str:
    with open(path, "rb") as f:
        return base64.b64encode(f.read()).decode("ascii")


def read_stdin(loop, lines: asyncio.Queue) -> None:
    """Feed input() lines into `lines` from a daemon thread; None marks end of input."""
    while True:
        try:
            line = input()
        except (EOFError, KeyboardInterrupt):
            line = None
        try:
            loop.call_soon_threadsafe(lines.put_nowait, line)
        except RuntimeError:
            # event loop already closed
            return
        if line is None:
            return


# ---------------------------------------------------------------------------
# Main async client function
# ---------------------------------------------------------------------------

async def run_client(nickname: str, server_url: str, max_file_size: int = DEFAULT_MAX_FILE_SIZE):
    """Connect, announce nickname, then run input and output loops concurrently."""
    base_url = http_base(server_url)
    state = {"connection_id": None, "quitting": False}
    lines: asyncio.Queue = asyncio.Queue()

    async with websockets.connect(server_url, max_size=None) as ws:
        await ws.send(frame("SET_NAME", {"name": nickname}))
        print(f"Connected to {server_url} as {nickname}")
        threading.Thread(target=read_stdin, args=(asyncio.get_running_loop(), lines),
                         daemon=True).start()

        # -------------------------------------------------------------------
        # Inner coroutine: handles outgoing messages (user input -> send)
        # -------------------------------------------------------------------
        async def sender():
            while True:
                line = await lines.get()
                if line is None:
                    break

                if line.strip() == "/quit":
                    break

                elif line.strip() == "/whoami":
                    print(f"connection id: {state['connection_id'] or '(not assigned yet)'}")

                elif line.startswith("/name "):
                    new_name = line[len("/name "):].strip()
                    if not new_name:
                        print("Usage: /name <new name>")
                        continue
                    await ws.send(frame("SET_NAME", {"name": new_name}))

                elif line.startswith("/send "):
                    parts = line.split()
                    if len(parts) not in (2, 3):
                        print("Usage: /send <path> [recipient_id]")
                        continue
                    path = parts[1]
                    recipient = parts[2] if len(parts) == 3 else None
                    if not os.path.isfile(path):
                        print(f"file not found: {path}")
                        continue
                    size = os.path.getsize(path)
                    if size > max_file_size:
                        print(f"[error] File too large (max: {format_size(max_file_size)})")
                        continue
                    try:
                        data = await asyncio.to_thread(read_upload, path)
                    except OSError as e:
                        print(f"[error] could not read {path}: {e}")
                        continue
                    await ws.send(frame("FILE_UPLOAD", {
                        "recipient_id": recipient,
                        "file_name": os.path.basename(path),
                        "data": data,
                    }))
                    print(f"File sent: {os.path.basename(path)} ({size} bytes)")

                elif line.startswith("/"):
                    print("Commands: /name <name>, /send <path> [recipient_id], /whoami, /quit")

                elif line:
                    await ws.send(frame("CHAT_MESSAGE", {"text": line}))

            state["quitting"] = True
            await ws.close(code=1000, reason="Client requested")

        # -------------------------------------------------------------------
        # Inner coroutine: handles incoming messages (receive -> display)
        # -------------------------------------------------------------------
        async def receiver():
            try:
                async for raw in ws:
                    try:
                        msg = json.loads(raw)
                    except ValueError:
                        print("[recv] ignoring non-JSON frame")
                        continue
                    if msg.get("type") == "WELCOME":
                        state["connection_id"] = (msg.get("payload") or {}).get("connection_id")
                        continue
                    line = format_event(msg, base_url)
                    if line is not None:
                        print(line)
            except websockets.exceptions.ConnectionClosed:
                print("Disconnected from server.")

        # The receiver ends when the socket closes from either side
        send_task = asyncio.ensure_future(sender())
        try:
            await receiver()
        finally:
            if not send_task.done() and not state["quitting"]:
                print("Connection closed by server.")
                send_task.cancel()
            await asyncio.gather(send_task, return_exceptions=True)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Relay chat client")
    parser.add_argument("--user", required=True, help="Display name")
    parser.add_argument("--server", default="ws://127.0.0.1:3000",
                        help="Server WebSocket URL (e.g., ws://127.0.0.1:3000)")
    parser.add_argument("--max-file-size", type=int, default=DEFAULT_MAX_FILE_SIZE,
                        help="Refuse to upload files larger than this many bytes")
    args = parser.parse_args(argv)

    try:
        asyncio.run(run_client(args.user, args.server, args.max_file_size))
    except KeyboardInterrupt:
        print("\nClient exiting.")
    except OSError as e:
        print(f"Could not connect to {args.server}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
