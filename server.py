"""
server.py
----------
Relay chat server.

Responsibilities:
- Manage WebSocket connections and their per-connection state
  (anonymous -> named -> gone)
- Keep the presence list and broadcast it whenever it changes
- Broadcast chat messages to every live connection
- Accept file uploads, validate and store them, then notify one recipient
  or everyone; stored files expire after a configurable delay
- Serve stored files over plain HTTP GET on the same port
"""

import asyncio, json, argparse, mimetypes, sys, time, uuid
from email.utils import formatdate
from http import HTTPStatus
from typing import Dict, Optional
from urllib.parse import unquote, urlsplit

from websockets import serve
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosed
from websockets.http11 import Response

from config import ConfigError, RelayConfig, load_config
from registry import IdentityRegistry
from storage import BlobStore, decode_payload
from transfer import ValidationError, validate_transfer

SERVER_ID = "server"
SYSTEM_SENDER = "System"

# Per-connection states
ANONYMOUS = "anonymous"
NAMED = "named"
GONE = "gone"

# Inbound frame types
SET_NAME = "SET_NAME"
CHAT_MESSAGE = "CHAT_MESSAGE"
FILE_UPLOAD = "FILE_UPLOAD"

# Outbound-only frame types
WELCOME = "WELCOME"
PRESENCE_UPDATE = "PRESENCE_UPDATE"
FILE_NOTIFICATION = "FILE_NOTIFICATION"
ERROR = "ERROR"


def now_ms() -> int:
    return int(time.time() * 1000)


def frame_limit(config: RelayConfig) -> int:
    """Largest WebSocket message accepted: a base64 upload at the size cap plus headroom."""
    encoded = (config.max_file_size + 2) // 3 * 4
    return max(encoded + 64 * 1024, 1024 * 1024)


class Connection:
    """One live client session and the socket it talks through."""

    def __init__(self, websocket, connection_id: Optional[str] = None) -> None:
        self.websocket = websocket
        self.connection_id = connection_id or uuid.uuid4().hex
        self.state = ANONYMOUS


class RelayEngine:
    """
    Connection-event state machine.

    One handler per inbound event type; each checks the connection's state
    before acting. Chat and file actions from anonymous connections are
    dropped without a reply.
    """

    def __init__(self, config: RelayConfig, registry: Optional[IdentityRegistry] = None,
                 store: Optional[BlobStore] = None) -> None:
        self.config = config
        self.registry = registry or IdentityRegistry()
        self.store = store or BlobStore(config.uploads_dir, config.url_prefix, config.naming_mode)
        self.connections: Dict[str, Connection] = {}
        self._handlers = {
            SET_NAME: self._on_set_name,
            CHAT_MESSAGE: self._on_chat_message,
            FILE_UPLOAD: self._on_file_upload,
        }
        self._closing = set()

    # ------------------------------------------------------------------
    # Outbound helpers
    # ------------------------------------------------------------------
    def envelope(self, mtype: str, payload: dict, to: str = "*") -> dict:
        return {
            "type": mtype,
            "from": SERVER_ID,
            "to": to,
            "id": uuid.uuid4().hex,
            "ts": now_ms(),
            "payload": payload,
        }

    def error_envelope(self, conn: Connection, code: str, message: str) -> dict:
        return self.envelope(ERROR, {"code": code, "message": message}, to=conn.connection_id)

    async def _send_raw(self, conn: Connection, data: str) -> bool:
        if conn.state == GONE:
            return False
        try:
            await asyncio.wait_for(conn.websocket.send(data), self.config.send_timeout_ms / 1000)
            return True
        except ConnectionClosed:
            # peer went away; its own handler cleans up
            return False
        except asyncio.TimeoutError:
            print(f"[relay] Delivery to {conn.connection_id} timed out, dropping connection")
            self.drop(conn)
            return False
        except Exception as e:
            print(f"[relay] Delivery to {conn.connection_id} failed: {e}")
            return False

    def drop(self, conn: Connection) -> None:
        """
        Stop delivering to a connection that is not draining its socket.

        The close runs in the background; the connection's own handler then
        performs the usual disconnect.
        """
        if self.connections.pop(conn.connection_id, None) is None:
            return
        task = asyncio.ensure_future(self._close(conn))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close(self, conn: Connection) -> None:
        try:
            await conn.websocket.close(code=1011, reason="send timeout")
        except Exception as e:
            print(f"[relay] Close of {conn.connection_id} failed: {e}")

    async def send(self, conn: Connection, env: dict) -> bool:
        return await self._send_raw(conn, json.dumps(env))

    async def broadcast(self, env: dict, exclude: Optional[Connection] = None) -> None:
        data = json.dumps(env)
        targets = [c for c in list(self.connections.values()) if c is not exclude]
        await asyncio.gather(*(self._send_raw(c, data) for c in targets))

    def participant(self, conn: Connection) -> Optional[str]:
        """Display name of a named connection; None means chat/file actions are dropped."""
        if conn.state != NAMED:
            return None
        return self.registry.resolve(conn.connection_id)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self, websocket) -> Connection:
        conn = Connection(websocket)
        self.connections[conn.connection_id] = conn
        print(f"[relay] User connected: {conn.connection_id}")
        await self.send(conn, self.envelope(WELCOME, {"connection_id": conn.connection_id},
                                            to=conn.connection_id))
        return conn

    async def disconnect(self, conn: Connection) -> None:
        if conn.state == GONE:
            return
        conn.state = GONE
        self.connections.pop(conn.connection_id, None)
        name = await self.registry.remove(conn.connection_id, announce=self._announce_departure)
        if name is not None:
            print(f"[relay] User disconnected: {name} ({conn.connection_id})")
        else:
            print(f"[relay] Connection closed: {conn.connection_id}")

    async def _announce_presence(self, names) -> None:
        await self.broadcast(self.envelope(PRESENCE_UPDATE, {"users": names}))

    async def _announce_departure(self, name: str, names) -> None:
        # the departing connection is already out of self.connections
        await self.broadcast(self.envelope(CHAT_MESSAGE, {
            "sender": SYSTEM_SENDER,
            "text": f"{name} left the chat!",
            "timestamp": now_ms(),
            "system": True,
        }))
        await self._announce_presence(names)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def set_name(self, conn: Connection, name: str) -> None:
        if conn.state == GONE:
            return
        conn.state = NAMED
        await self.registry.set_name(conn.connection_id, name, announce=self._announce_presence)

    async def chat_message(self, conn: Connection, text: str) -> None:
        sender = self.participant(conn)
        if sender is None:
            return
        await self.broadcast(self.envelope(CHAT_MESSAGE, {
            "sender": sender,
            "text": text,
            "timestamp": now_ms(),
            "system": False,
        }))

    async def file_upload(self, conn: Connection, file_name: str, data: str,
                          recipient_id: Optional[str] = None) -> None:
        """
        Validate, store and announce one upload.

        Rejections and failures are reported to the sender only. With a
        recipient_id the notification goes to that connection alone (never
        back to the sender); otherwise every live connection receives it.
        """
        sender = self.participant(conn)
        if sender is None:
            return
        print(f"[relay] Receiving file: {file_name} from {sender}")

        try:
            raw = decode_payload(data)
            validate_transfer(len(raw), file_name, self.config.max_file_size,
                              self.config.allowed_file_types)
            stored = await self.store.save(raw, file_name)
        except ValidationError as e:
            print(f"[relay] Rejected {file_name!r} from {sender}: {e.reason}")
            await self.send(conn, self.error_envelope(conn, e.code, e.message))
            return
        except Exception as e:
            print(f"[relay] File upload error: {e}")
            await self.send(conn, self.error_envelope(conn, "UPLOAD_FAILED", "File upload failed."))
            return

        payload = {"sender": sender, "file_name": file_name, "file_url": stored.url}
        if recipient_id:
            target = self.connections.get(recipient_id)
            if target is not None and target is not conn:
                await self.send(target, self.envelope(FILE_NOTIFICATION, payload, to=recipient_id))
            else:
                print(f"[relay] Recipient {recipient_id} not connected, dropping notification.")
        else:
            await self.broadcast(self.envelope(FILE_NOTIFICATION, payload))

        if self.config.delete_enabled:
            self.store.schedule_delete(stored, self.config.delete_after_ms)

    # ------------------------------------------------------------------
    # Inbound dispatch
    # ------------------------------------------------------------------
    async def dispatch(self, conn: Connection, raw) -> None:
        if conn.state == GONE:
            return
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError) as e:
            await self.send(conn, self.error_envelope(conn, "BAD_JSON", str(e)))
            return
        if not isinstance(msg, dict):
            await self.send(conn, self.error_envelope(conn, "BAD_JSON", "expected a JSON object"))
            return

        mtype = msg.get("type")
        payload = msg.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        handler = self._handlers.get(mtype)
        if handler is None:
            print(f"[relay] Unknown msg type from {conn.connection_id}: {mtype}")
            return
        await handler(conn, payload)

    async def _on_set_name(self, conn: Connection, payload: dict) -> None:
        name = payload.get("name")
        if not isinstance(name, str):
            print(f"[relay] Ignoring SET_NAME without a name from {conn.connection_id}")
            return
        await self.set_name(conn, name)

    async def _on_chat_message(self, conn: Connection, payload: dict) -> None:
        text = payload.get("text")
        if not isinstance(text, str):
            return
        await self.chat_message(conn, text)

    async def _on_file_upload(self, conn: Connection, payload: dict) -> None:
        if self.participant(conn) is None:
            return
        file_name = payload.get("file_name")
        recipient_id = payload.get("recipient_id")
        if not isinstance(file_name, str) or not file_name or \
                not (recipient_id is None or isinstance(recipient_id, str)):
            await self.send(conn, self.error_envelope(conn, "BAD_FILE_UPLOAD", "Malformed file upload."))
            return
        await self.file_upload(conn, file_name, payload.get("data"), recipient_id or None)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def handle_ws(self, websocket) -> None:
        """Per-connection loop: register, dispatch frames, always clean up."""
        conn = await self.connect(websocket)
        try:
            async for raw in websocket:
                await self.dispatch(conn, raw)
        except ConnectionClosed as e:
            print(f"[relay] WebSocket closed abnormally for {conn.connection_id}: {e}")
        except Exception as e:
            print(f"[relay] recv_loop error for {conn.connection_id}: {e}")
        finally:
            await self.disconnect(conn)

    async def process_request(self, connection, request):
        """
        Serve GET {url_prefix}/{name} from the blob store.

        Any other path continues with the WebSocket handshake.
        """
        path = urlsplit(request.path).path
        prefix = self.store.url_prefix + "/"
        if not path.startswith(prefix):
            return None

        name = unquote(path[len(prefix):])
        stored = self.store.open(name)
        body = None
        if stored is not None:
            try:
                body = await asyncio.to_thread(stored.read_bytes)
            except OSError:
                # expired between lookup and read
                body = None
        if body is None:
            print(f"[http] 404 {path}")
            return connection.respond(HTTPStatus.NOT_FOUND, "File not found\n")

        headers = Headers()
        headers["Date"] = formatdate(usegmt=True)
        headers["Connection"] = "close"
        headers["Content-Length"] = str(len(body))
        headers["Content-Type"] = mimetypes.guess_type(name)[0] or "application/octet-stream"
        print(f"[http] 200 {path} ({len(body)} bytes)")
        return Response(HTTPStatus.OK.value, HTTPStatus.OK.phrase, headers, body)


# ---------------------------------------------------------------------------
# Main server loop
# ---------------------------------------------------------------------------
async def main_loop(config: RelayConfig):
    engine = RelayEngine(config)
    async with serve(engine.handle_ws, config.host, config.port,
                     process_request=engine.process_request,
                     max_size=frame_limit(config),
                     ping_interval=15, ping_timeout=45):
        print(f"[relay] Listening on ws://{config.host}:{config.port} "
              f"(files under {config.url_prefix}/ from {engine.store.directory})")
        try:
            await asyncio.Future()
        finally:
            engine.store.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Relay chat server")
    parser.add_argument("--config", default=None, help="YAML settings file (e.g. relay.yaml)")
    parser.add_argument("--host", default=None, help="Hostname or IP to bind")
    parser.add_argument("--port", default=None, type=int, help="TCP port to listen on")
    parser.add_argument("--uploads-dir", default=None, help="Directory for stored uploads")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config).with_overrides(
            host=args.host, port=args.port, uploads_dir=args.uploads_dir,
        )
    except (OSError, ConfigError) as e:
        print(f"Fatal configuration error: {e}")
        return 2

    try:
        asyncio.run(main_loop(config))
    except KeyboardInterrupt:
        print("\nServer shutting down gracefully...")
    except OSError as e:
        print("Fatal error starting server:", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
