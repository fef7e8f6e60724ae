"""stdio-Transport: Newline-delimited JSON-RPC auf stdin/stdout.

  - Liest Zeile für Zeile von stdin (oder einem injizierten StreamReader)
  - Jede Zeile läuft als eigener Task, Requests dürfen sich überholen;
    die Antwort trägt die id des Requests
  - Antworten werden als eine JSON-Zeile auf stdout geschrieben (Lock)
  - Logs gehen ausschließlich nach stderr
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
import uuid
from typing import Any, TextIO

from toolhost.mcp.rpc import INVALID_REQUEST, RpcDispatcher, rpc_error
from toolhost.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_MAX_MESSAGE_BYTES = 1024 * 1024


class StdioTransport:
    """JSON-RPC über Standard-Streams."""

    def __init__(
        self,
        dispatcher: RpcDispatcher,
        *,
        reader: asyncio.StreamReader | None = None,
        writer: TextIO | None = None,
        max_concurrency: int = 100,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
    ) -> None:
        self._dispatcher = dispatcher
        self._reader = reader
        self._owns_reader = reader is None
        self._max_message_bytes = max_message_bytes
        self._writer = writer
        self._pipe_transport: asyncio.ReadTransport | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._write_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._messages = 0

    @property
    def is_running(self) -> bool:
        return self._read_task is not None and not self._read_task.done()

    @property
    def pending(self) -> int:
        return len(self._inflight)

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self.is_running:
            return
        if self._owns_reader:
            self._reader = asyncio.StreamReader(limit=self._max_message_bytes)
            protocol = asyncio.StreamReaderProtocol(self._reader)
            loop = asyncio.get_running_loop()
            # Duplikat von fd 0: close() schließt nur die Kopie, ein Neustart liest weiter
            stdin = os.fdopen(os.dup(sys.stdin.fileno()), "rb", buffering=0)
            self._pipe_transport, _ = await loop.connect_read_pipe(lambda: protocol, stdin)
        if self._writer is None:
            self._writer = sys.stdout

        self._read_task = asyncio.create_task(self._read_loop(), name="stdio-reader")
        log.info("stdio_transport_started")

    async def wait_closed(self) -> None:
        """Wartet bis stdin endet und alle offenen Requests beantwortet sind."""
        if self._read_task is not None:
            await asyncio.shield(self._read_task)
        if self._inflight:
            await asyncio.shield(asyncio.gather(*self._inflight, return_exceptions=True))

    async def close(self) -> None:
        """Bricht den Lese-Loop und offene Requests ab und löst stdin."""
        tasks = [t for t in (self._read_task, *self._inflight) if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._read_task = None
        self._inflight.clear()

        if self._pipe_transport is not None:
            self._pipe_transport.close()
            self._pipe_transport = None
        if self._owns_reader:
            self._reader = None
        log.info("stdio_transport_closed", messages=self._messages)

    # ── Reading ──────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        while True:
            try:
                line = await self._readline()
            except asyncio.LimitOverrunError:
                log.warning("stdio_message_too_large", limit=self._max_message_bytes)
                await self.send(rpc_error(
                    INVALID_REQUEST,
                    f"Message too large (limit {self._max_message_bytes} bytes)",
                ))
                continue
            if not line:
                log.info("stdio_eof")
                break
            if not line.strip():
                continue
            self._messages += 1
            task = asyncio.create_task(self._handle_line(line))
            self._inflight.add(task)
            task.add_done_callback(self._on_task_done)

    async def _readline(self) -> bytes:
        """Nächste Zeile, b"" bei EOF.

        Überlange Zeilen werden bis zum nächsten Newline verworfen, danach
        wird LimitOverrunError weitergereicht.
        """
        assert self._reader is not None
        try:
            return await self._reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            return exc.partial
        except asyncio.LimitOverrunError as exc:
            consumed = exc.consumed
            while True:
                await self._reader.read(consumed)
                try:
                    await self._reader.readuntil(b"\n")
                    break
                except asyncio.IncompleteReadError:
                    break
                except asyncio.LimitOverrunError as more:
                    consumed = more.consumed
            raise

    async def _handle_line(self, line: bytes) -> None:
        async with self._semaphore:
            response = await self._dispatcher.handle_text(line, request_id=uuid.uuid4().hex)
        if response is not None:
            await self.send(response)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("stdio_task_error", error=str(exc), exc_type=type(exc).__name__)

    # ── Writing ──────────────────────────────────────────────────

    async def send(self, message: Any) -> None:
        """Schreibt eine Nachricht als einzelne JSON-Zeile."""
        line = json.dumps(message, ensure_ascii=False, default=str) + "\n"
        async with self._write_lock:
            assert self._writer is not None
            self._writer.write(line)
            self._writer.flush()
