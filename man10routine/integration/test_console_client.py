"""
Tests for the console client against a local TCP server.
"""

import asyncio
import unittest
from datetime import timedelta
from unittest.mock import Mock, patch

from man10routine.config.loader import ConsoleConfig, ConsoleTarget, ServerEndpoint, WorkloadRole
from man10routine.errors.errors import ErrorCode, RoutineError
from .console_client import ConsoleClient


class FakeConsoleServer:
    """Line-oriented console server with scripted misbehaviour."""

    PASSWORD = "hunter2"

    def __init__(self):
        self.received = []
        self.connections = 0
        self.server = None

    async def start(self) -> int:
        self.server = await asyncio.start_server(self.handle, '127.0.0.1', 0)
        return self.server.sockets[0].getsockname()[1]

    async def stop(self):
        self.server.close()
        await self.server.wait_closed()

    async def handle(self, reader, writer):
        self.connections += 1
        try:
            auth = (await reader.readline()).decode().strip()
            if auth != f"AUTH {self.PASSWORD}":
                writer.write(b"ERR bad password\n")
                await writer.drain()
                return
            writer.write(b"OK authenticated\n")
            await writer.drain()

            while True:
                line = await reader.readline()
                if not line:
                    break
                command = line.decode().strip()
                self.received.append(command)
                if command == "hang":
                    continue
                if command == "close":
                    break
                if command == "garbage":
                    writer.write(b"\xff\xfe\xfd\n")
                elif command.startswith("say flood"):
                    writer.write(b"x" * 70000 + b"\n")
                elif command == "unknown":
                    writer.write(b"ERR unknown command\n")
                else:
                    writer.write(f"OK {command}\n".encode())
                await writer.drain()
        finally:
            writer.close()


def make_endpoint(port: int) -> ServerEndpoint:
    return ServerEndpoint(
        name="lobby",
        role=WorkloadRole.SERVER,
        argocd_path="apps/minecraft/lobby",
        console=ConsoleTarget(host="127.0.0.1", port=port),
    )


def make_config(password=FakeConsoleServer.PASSWORD) -> ConsoleConfig:
    return ConsoleConfig(
        password=password,
        timeout=timedelta(seconds=0.5),
        connect_timeout=timedelta(seconds=1),
        retry_backoff=timedelta(seconds=0),
        restart_warning="Restarting soon",
    )


class TestConsoleClient(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.fake = FakeConsoleServer()
        self.endpoint = make_endpoint(await self.fake.start())
        self.client = ConsoleClient(make_config())

    async def asyncTearDown(self):
        await self.fake.stop()

    async def test_run_commands_in_order(self):
        replies = await self.client.run(self.endpoint, ["say hello", "save-all flush"])

        self.assertEqual(replies, ["OK say hello", "OK save-all flush"])
        self.assertEqual(self.fake.received, ["say hello", "save-all flush"])

    async def test_broadcast_and_flush(self):
        await self.client.broadcast_warning(self.endpoint, "Restarting soon")
        await self.client.flush(self.endpoint)

        self.assertEqual(self.fake.received, ["say Restarting soon", "save-all flush"])
        self.assertEqual(self.fake.connections, 2)

    async def test_wrong_password(self):
        client = ConsoleClient(make_config(password="wrong"))

        with self.assertRaises(RoutineError) as ctx:
            await client.run(self.endpoint, ["say hello"])
        self.assertEqual(ctx.exception.code, ErrorCode.AUTHENTICATION)
        self.assertEqual(self.fake.received, [])

    async def test_error_reply_is_protocol_error(self):
        with self.assertRaises(RoutineError) as ctx:
            await self.client.run(self.endpoint, ["unknown"])
        self.assertEqual(ctx.exception.code, ErrorCode.PROTOCOL)

    async def test_eof_is_protocol_error(self):
        with self.assertRaises(RoutineError) as ctx:
            await self.client.run(self.endpoint, ["close"])
        self.assertEqual(ctx.exception.code, ErrorCode.PROTOCOL)

    async def test_undecodable_reply_is_protocol_error(self):
        with self.assertRaises(RoutineError) as ctx:
            await self.client.run(self.endpoint, ["garbage"])
        self.assertEqual(ctx.exception.code, ErrorCode.PROTOCOL)

    async def test_oversized_reply_is_protocol_error(self):
        with self.assertRaises(RoutineError) as ctx:
            await self.client.broadcast_warning(self.endpoint, "flood")
        self.assertEqual(ctx.exception.code, ErrorCode.PROTOCOL)
        self.assertEqual(ctx.exception.context["server"], "lobby")

    async def test_slow_reply_times_out(self):
        with self.assertRaises(RoutineError) as ctx:
            await self.client.run(self.endpoint, ["hang"])
        self.assertEqual(ctx.exception.code, ErrorCode.TIMEOUT)

    async def test_multiline_command_rejected(self):
        with self.assertRaises(RoutineError) as ctx:
            await self.client.run(self.endpoint, ["say a\nstop"])
        self.assertEqual(ctx.exception.code, ErrorCode.PROTOCOL)
        self.assertEqual(self.fake.received, [])

    async def test_session_closed_on_error(self):
        with self.assertRaises(RuntimeError):
            async with self.client.session(self.endpoint) as session:
                await session.send("say hi")
                raise RuntimeError("boom")
        self.assertTrue(session.closed)


class TestConsoleConnectRetry(unittest.IsolatedAsyncioTestCase):

    async def test_connection_refused_retried_once(self):
        client = ConsoleClient(make_config())
        refused = Mock(side_effect=ConnectionRefusedError("refused"))

        with patch("man10routine.integration.console_client.asyncio.open_connection", refused):
            with self.assertRaises(RoutineError) as ctx:
                await client.run(make_endpoint(25575), ["say hello"])

        self.assertEqual(ctx.exception.code, ErrorCode.TRANSIENT_NETWORK)
        self.assertEqual(refused.call_count, 2)

    async def test_missing_console_target(self):
        client = ConsoleClient(make_config())
        endpoint = ServerEndpoint(name="mcproxy-dan5", role=WorkloadRole.PROXY, argocd_path="apps/mcproxy-dan5")

        with self.assertRaises(RoutineError) as ctx:
            await client.connect(endpoint)
        self.assertEqual(ctx.exception.code, ErrorCode.CONFIGURATION)


if __name__ == '__main__':
    unittest.main()
