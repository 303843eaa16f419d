"""
Stdio JSON-RPC client for external tool servers.

A tool server is a child process speaking JSON-RPC 2.0 over its stdin and
stdout. Each message is framed as

    Content-Length: <byte length>\\r\\n\\r\\n<UTF-8 JSON body>

Connection lifecycle: SPAWNED -> INITIALIZED -> READY -> CLOSED.

Requests carry an id and a deadline. Responses are matched by id in
whatever order they arrive; a request that outlives its deadline is
rejected with RpcTimeoutError and forgotten, so a late reply is ignored.
"""

import asyncio
import itertools
import json
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from relaymind.errors import RpcClosedError, RpcError, RpcTimeoutError

logger = logging.getLogger(__name__)

HEADER_SEPARATOR = b"\r\n\r\n"
CONTENT_LENGTH = re.compile(rb"Content-Length:\s*(\d+)", re.IGNORECASE)
DEFAULT_TIMEOUT = 20.0
CLIENT_INFO = {"name": "relaymind", "version": "0.1.0"}
READ_CHUNK = 65536


def encode_frame(payload: dict[str, Any]) -> bytes:
    """Serialize one JSON-RPC message with its Content-Length header."""
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return b"Content-Length: " + str(len(body)).encode("ascii") + HEADER_SEPARATOR + body


class FrameDecoder:
    """
    Incremental decoder for Content-Length framed messages.

    feed() accepts chunks split at arbitrary byte boundaries (including in
    the middle of the header or of a multi-byte character) and returns
    every message completed so far.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        self._buffer.extend(chunk)
        messages = []
        while True:
            header_end = self._buffer.find(HEADER_SEPARATOR)
            if header_end == -1:
                break
            header = bytes(self._buffer[:header_end])
            match = CONTENT_LENGTH.search(header)
            body_start = header_end + len(HEADER_SEPARATOR)
            if match is None:
                logger.warning(f"Skipping frame header without Content-Length: {header[:80]!r}")
                del self._buffer[:body_start]
                continue

            body_end = body_start + int(match.group(1))
            if len(self._buffer) < body_end:
                break
            body = bytes(self._buffer[body_start:body_end])
            del self._buffer[:body_end]

            try:
                message = json.loads(body.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                message = None
            if not isinstance(message, dict):
                message = {
                    "jsonrpc": "2.0",
                    "error": {"code": -32700, "message": "Invalid JSON from tool server."},
                }
            messages.append(message)
        return messages


class ConnectionState(Enum):
    NEW = "new"
    SPAWNED = "spawned"
    INITIALIZED = "initialized"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class PendingRequest:
    """An outstanding request awaiting its response."""
    id: int
    method: str
    future: asyncio.Future
    deadline: float


class StdioRpcClient:
    """
    JSON-RPC client bound to one spawned child process.

    Usage:
        async with StdioRpcClient("python", ["server.py"]) as client:
            await client.initialize()
            result = await client.request("tools/list")
    """

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        client_info: dict[str, str] | None = None,
    ):
        self.command = command
        self.args = list(args or [])
        self.env = dict(env or {})
        self.timeout = timeout
        self.client_info = client_info or dict(CLIENT_INFO)
        self.state = ConnectionState.NEW
        self.server_info: dict[str, Any] = {}

        self._process: asyncio.subprocess.Process | None = None
        self._pending: dict[int, PendingRequest] = {}
        self._ids = itertools.count(1)
        self._decoder = FrameDecoder()
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        """Spawn the server process and begin reading its output."""
        if self.state != ConnectionState.NEW:
            raise RpcClosedError(f"Client already started (state: {self.state.value})")
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env},
            )
        except OSError as e:
            self.state = ConnectionState.CLOSED
            raise RpcClosedError(f"Failed to start tool server '{self.command}': {e}") from e

        self.state = ConnectionState.SPAWNED
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.debug(f"Spawned tool server {self.command} (pid {self._process.pid})")

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for its result."""
        self._ensure_open()
        loop = asyncio.get_running_loop()
        timeout = self.timeout if timeout is None else timeout
        request_id = next(self._ids)
        pending = PendingRequest(
            id=request_id,
            method=method,
            future=loop.create_future(),
            deadline=loop.time() + timeout,
        )
        self._pending[request_id] = pending

        try:
            await self._write({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})
            return await asyncio.wait_for(pending.future, timeout=timeout)
        except TimeoutError as e:
            logger.warning(f"Request {method} (id {request_id}) timed out after {timeout}s")
            raise RpcTimeoutError(f"Request timed out: {method}") from e
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification (no id, no response)."""
        self._ensure_open()
        await self._write({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def initialize(self) -> dict[str, Any]:
        """Perform the initialize handshake. Returns the server's result."""
        result = await self.request("initialize", {
            "protocolVersion": "2024-11-05",
            "clientInfo": self.client_info,
            "capabilities": {"tools": {}},
        })
        self.state = ConnectionState.INITIALIZED
        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        await self.notify("notifications/initialized")
        self.state = ConnectionState.READY
        return result

    async def close(self) -> None:
        """Terminate the server and reject anything still pending."""
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        self._fail_pending(RpcClosedError("Connection closed"))

        process = self._process
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=2.0)
            except ProcessLookupError:
                pass
            except TimeoutError:
                process.kill()
                await process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            elif task is not None and not task.cancelled() and task.exception() is not None:
                logger.warning(f"Reader for {self.command} failed: {task.exception()}")
        logger.debug(f"Closed tool server {self.command}")

    async def __aenter__(self) -> "StdioRpcClient":
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _ensure_open(self) -> None:
        if self.state in (ConnectionState.NEW, ConnectionState.CLOSED) or self._process is None:
            raise RpcClosedError(f"Connection is not open (state: {self.state.value})")

    async def _write(self, payload: dict[str, Any]) -> None:
        assert self._process is not None and self._process.stdin is not None
        try:
            self._process.stdin.write(encode_frame(payload))
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise RpcClosedError(f"Tool server is not accepting input: {e}") from e

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        while True:
            chunk = await stdout.read(READ_CHUNK)
            if not chunk:
                break
            for message in self._decoder.feed(chunk):
                try:
                    self._handle_message(message)
                except Exception as e:
                    logger.error(f"Failed to handle message from {self.command}: {e}")
        logger.debug(f"Tool server {self.command} closed its output")
        self._fail_pending(RpcClosedError("Tool server exited before replying"))

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        async for line in self._process.stderr:
            logger.debug(f"[{self.command}] {line.decode('utf-8', errors='replace').rstrip()}")

    def _handle_message(self, message: dict[str, Any]) -> None:
        if "method" in message:
            logger.debug(f"Ignoring server-initiated message: {message.get('method')}")
            return

        message_id = message.get("id")
        if isinstance(message_id, bool) or not isinstance(message_id, int | str | None):
            logger.warning(f"Ignoring response with invalid id {message_id!r}")
            return

        pending = self._pending.get(message_id)
        if pending is None:
            if "error" in message and message_id is None:
                logger.warning(f"Tool server sent an unmatched error: {message['error']}")
            else:
                logger.debug(f"Ignoring response for unknown id {message_id!r}")
            return
        if pending.future.done():
            return

        if "error" in message:
            error = message["error"] if isinstance(message["error"], dict) else {"message": str(message["error"])}
            pending.future.set_exception(RpcError(
                error.get("message", "Tool server error"),
                code=error.get("code"),
                data=error.get("data"),
            ))
        else:
            pending.future.set_result(message.get("result"))

    def _fail_pending(self, error: RpcError) -> None:
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_exception(error)
        self._pending.clear()
