"""Tests for the single-port TCP forwarder."""

import asyncio
import socket

import pytest

from wssmux.forwarder import Forwarder, ForwarderState


async def start_echo_server() -> tuple[asyncio.Server, int]:
    async def echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while data := await reader.read(65536):
                writer.write(data)
                await writer.drain()
        finally:
            writer.close()

    server = await asyncio.start_server(echo, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


async def roundtrip(port: int, payload: bytes) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(payload)
    await writer.drain()
    data = await asyncio.wait_for(reader.readexactly(len(payload)), timeout=5)
    writer.close()
    await writer.wait_closed()
    return data


@pytest.mark.integration
class TestForwarder:
    """Relay behaviour over real loopback sockets."""

    @pytest.mark.asyncio
    async def test_relays_bytes(self, free_port):
        echo_server, echo_port = await start_echo_server()
        forwarder = Forwarder(free_port(), "127.0.0.1", target_port=echo_port, listen_host="127.0.0.1")
        try:
            assert await forwarder.start()
            assert forwarder.state == ForwarderState.LISTENING
            assert await roundtrip(forwarder.port, b"hello tunnel") == b"hello tunnel"
        finally:
            await forwarder.stop()
            echo_server.close()
            await echo_server.wait_closed()

        assert forwarder.state == ForwarderState.STOPPED

    @pytest.mark.asyncio
    async def test_concurrent_clients_are_independent(self, free_port):
        echo_server, echo_port = await start_echo_server()
        forwarder = Forwarder(free_port(), "127.0.0.1", target_port=echo_port, listen_host="127.0.0.1")
        try:
            await forwarder.start()
            payloads = [f"client-{i}".encode() * 100 for i in range(10)]
            results = await asyncio.gather(*(roundtrip(forwarder.port, p) for p in payloads))
            assert results == payloads
        finally:
            await forwarder.stop()
            echo_server.close()
            await echo_server.wait_closed()

    @pytest.mark.asyncio
    async def test_target_port_defaults_to_listen_port(self):
        forwarder = Forwarder(8443, "203.0.113.9")
        assert forwarder.target == "203.0.113.9:8443"
        assert forwarder.state == ForwarderState.STOPPED

    @pytest.mark.asyncio
    async def test_bind_conflict_marks_failed(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen()
            port = blocker.getsockname()[1]

            forwarder = Forwarder(port, "127.0.0.1", listen_host="127.0.0.1")
            assert await forwarder.start() is False
            assert forwarder.state == ForwarderState.FAILED
            assert forwarder.error

            await forwarder.stop()
            assert forwarder.state == ForwarderState.FAILED

    @pytest.mark.asyncio
    async def test_unreachable_target_closes_client(self, free_port):
        dead_port = free_port()
        forwarder = Forwarder(free_port(), "127.0.0.1", target_port=dead_port, listen_host="127.0.0.1")
        try:
            await forwarder.start()
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.port)
            data = await asyncio.wait_for(reader.read(), timeout=5)
            assert data == b""
            writer.close()
        finally:
            await forwarder.stop()

    @pytest.mark.asyncio
    async def test_client_close_releases_silent_target(self, free_port):
        eof_seen = asyncio.Event()
        release = asyncio.Event()

        async def silent(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            # Never answers and keeps its side open
            while await reader.read(65536):
                pass
            eof_seen.set()
            await release.wait()
            writer.close()

        target = await asyncio.start_server(silent, "127.0.0.1", 0)
        target_port = target.sockets[0].getsockname()[1]
        forwarder = Forwarder(free_port(), "127.0.0.1", target_port=target_port, listen_host="127.0.0.1")
        try:
            await forwarder.start()
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.port)
            writer.write(b"hi")
            await writer.drain()
            writer.close()
            await writer.wait_closed()

            await asyncio.wait_for(eof_seen.wait(), timeout=5)
            for _ in range(200):
                if forwarder.active_connections == 0:
                    break
                await asyncio.sleep(0.01)
            assert forwarder.active_connections == 0
        finally:
            await forwarder.stop()
            release.set()
            target.close()
            await target.wait_closed()

    @pytest.mark.asyncio
    async def test_half_closed_client_still_gets_reply(self, free_port):
        echo_server, echo_port = await start_echo_server()
        forwarder = Forwarder(free_port(), "127.0.0.1", target_port=echo_port, listen_host="127.0.0.1")
        try:
            await forwarder.start()
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.port)
            writer.write(b"last words")
            writer.write_eof()

            assert await asyncio.wait_for(reader.read(), timeout=5) == b"last words"
            writer.close()
        finally:
            await forwarder.stop()
            echo_server.close()
            await echo_server.wait_closed()

    @pytest.mark.asyncio
    async def test_stop_cancels_active_relays(self, free_port):
        echo_server, echo_port = await start_echo_server()
        forwarder = Forwarder(free_port(), "127.0.0.1", target_port=echo_port, listen_host="127.0.0.1")
        try:
            await forwarder.start()
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.port)
            writer.write(b"ping")
            await reader.readexactly(4)
            assert forwarder.active_connections == 1

            await forwarder.stop()

            assert forwarder.active_connections == 0
            assert await asyncio.wait_for(reader.read(), timeout=5) == b""
            writer.close()
        finally:
            echo_server.close()
            await echo_server.wait_closed()

    @pytest.mark.asyncio
    async def test_idle_timeout_closes_relay(self, free_port):
        echo_server, echo_port = await start_echo_server()
        forwarder = Forwarder(
            free_port(), "127.0.0.1", target_port=echo_port, listen_host="127.0.0.1", idle_timeout=0.2
        )
        try:
            await forwarder.start()
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.port)
            writer.write(b"ping")
            await reader.readexactly(4)

            # No further traffic: the relay is closed by the forwarder
            assert await asyncio.wait_for(reader.read(), timeout=5) == b""
            writer.close()
        finally:
            await forwarder.stop()
            echo_server.close()
            await echo_server.wait_closed()

    @pytest.mark.asyncio
    async def test_get_info(self):
        forwarder = Forwarder(8080, "127.0.0.1")
        info = forwarder.get_info()
        assert info == {
            "port": 8080,
            "target": "127.0.0.1:8080",
            "state": "stopped",
            "error": None,
            "active_connections": 0,
        }
