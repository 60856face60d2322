"""Single-port TCP forwarder.

Each forwarder owns one listening socket. Every accepted client is handled
by its own task that connects to the target and relays bytes in both
directions until either side closes.
"""

import asyncio
import contextlib
from enum import Enum
from typing import Any

from .logging import get_logger

logger = get_logger(__name__)

BUFFER_SIZE = 65536
CONNECT_TIMEOUT = 10.0
# Grace period for the other direction once one side has closed
HALF_CLOSE_TIMEOUT = 0.5


class ForwarderState(str, Enum):
    """Forwarder lifecycle states."""

    STARTING = "starting"
    LISTENING = "listening"
    FAILED = "failed"
    STOPPED = "stopped"


class _IdleTracker:
    """Shared activity clock for the two directions of one relay."""

    def __init__(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.last_activity = self._loop.time()

    def touch(self) -> None:
        self.last_activity = self._loop.time()

    def idle_for(self) -> float:
        return self._loop.time() - self.last_activity


class Forwarder:
    """Listens on one port and relays every client to ``target_host``."""

    def __init__(
        self,
        port: int,
        target_host: str,
        target_port: int | None = None,
        listen_host: str = "0.0.0.0",  # nosec B104
        idle_timeout: float | None = None,
    ):
        """Initialize the forwarder.

        Args:
            port: Port to listen on
            target_host: Host every client is relayed to
            target_port: Port on the target host (defaults to ``port``)
            listen_host: Address to bind the listener to
            idle_timeout: Close a relay after this many seconds without
                traffic in either direction; None keeps it open indefinitely
        """
        self.port = port
        self.target_host = target_host
        self.target_port = target_port if target_port is not None else port
        self.listen_host = listen_host
        self.idle_timeout = idle_timeout

        self.state = ForwarderState.STOPPED
        self.error: str | None = None
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.Task[None]] = set()
        self._connection_count = 0

    @property
    def target(self) -> str:
        return f"{self.target_host}:{self.target_port}"

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    async def start(self) -> bool:
        """Bind the listener.

        Returns:
            True if listening, False if the bind failed (state is FAILED)
        """
        if self.state == ForwarderState.LISTENING:
            return True

        self.state = ForwarderState.STARTING
        self.error = None
        try:
            self._server = await asyncio.start_server(
                self._accept,
                host=self.listen_host,
                port=self.port,
                reuse_address=True,
            )
        except OSError as e:
            self.state = ForwarderState.FAILED
            self.error = str(e)
            logger.error(
                "Failed to bind forwarder", port=self.port, target=self.target, error=str(e)
            )
            return False

        self.state = ForwarderState.LISTENING
        logger.info("Setting up tunnel", port=self.port, target=self.target)
        return True

    async def stop(self) -> None:
        """Close the listener and cancel every active relay."""
        if self._server is not None:
            self._server.close()

        tasks = list(self._connections)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._server is not None:
            with contextlib.suppress(Exception):
                await self._server.wait_closed()
            self._server = None

        if self.state != ForwarderState.FAILED:
            self.state = ForwarderState.STOPPED
        logger.debug("Forwarder stopped", port=self.port)

    def get_info(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "target": self.target,
            "state": self.state.value,
            "error": self.error,
            "active_connections": self.active_connections,
        }

    async def _accept(
        self, client_reader: asyncio.StreamReader, client_writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        self._connection_count += 1
        conn_id = self._connection_count
        try:
            await self._handle_client(conn_id, client_reader, client_writer)
        finally:
            if task is not None:
                self._connections.discard(task)

    async def _handle_client(
        self,
        conn_id: int,
        client_reader: asyncio.StreamReader,
        client_writer: asyncio.StreamWriter,
    ) -> None:
        peer = client_writer.get_extra_info("peername")
        try:
            upstream_reader, upstream_writer = await asyncio.wait_for(
                asyncio.open_connection(self.target_host, self.target_port),
                timeout=CONNECT_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(
                "Target connection failed",
                port=self.port,
                conn=conn_id,
                peer=str(peer),
                target=self.target,
                error=str(e) or type(e).__name__,
            )
            await _close_writer(client_writer)
            return

        logger.debug("Connection opened", port=self.port, conn=conn_id, peer=str(peer))
        tracker = _IdleTracker()
        relays = [
            asyncio.create_task(self._pipe(client_reader, upstream_writer, tracker)),
            asyncio.create_task(self._pipe(upstream_reader, client_writer, tracker)),
        ]
        try:
            if await self._wait_first_close(relays, tracker):
                pending = [relay for relay in relays if not relay.done()]
                if pending:
                    await asyncio.wait(pending, timeout=HALF_CLOSE_TIMEOUT)
        finally:
            for relay in relays:
                relay.cancel()
            await asyncio.gather(*relays, return_exceptions=True)
            await _close_writer(upstream_writer)
            await _close_writer(client_writer)
            logger.debug("Connection closed", port=self.port, conn=conn_id)

    async def _wait_first_close(
        self, relays: list["asyncio.Task[None]"], tracker: _IdleTracker
    ) -> bool:
        """Wait until one direction reaches EOF.

        Returns:
            True when a side closed, False when the relay went idle first
        """
        while True:
            timeout: float | None = None
            if self.idle_timeout is not None:
                timeout = self.idle_timeout - tracker.idle_for()
                if timeout <= 0:
                    logger.info(
                        "Closing idle connection", port=self.port, idle_timeout=self.idle_timeout
                    )
                    return False
            done, _ = await asyncio.wait(
                relays, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if done:
                return True

    @staticmethod
    async def _pipe(
        reader: asyncio.StreamReader, writer: asyncio.StreamWriter, tracker: _IdleTracker
    ) -> None:
        """Copy data from reader to writer until EOF, then half-close."""
        try:
            while True:
                data = await reader.read(BUFFER_SIZE)
                if not data:
                    break
                tracker.touch()
                writer.write(data)
                await writer.drain()
        except (ConnectionResetError, BrokenPipeError, OSError):
            pass
        finally:
            if writer.can_write_eof():
                with contextlib.suppress(OSError, RuntimeError):
                    writer.write_eof()


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    with contextlib.suppress(Exception):
        writer.close()
        await writer.wait_closed()
