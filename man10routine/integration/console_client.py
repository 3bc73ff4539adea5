"""
Remote console client.

Speaks a line-oriented protocol over TCP: the client authenticates with
`AUTH <password>`, then every command is a single UTF-8 line answered by
a single line. Replies starting with `ERR` are failures.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List

from man10routine.config.loader import ConsoleConfig, ServerEndpoint
from man10routine.errors.errors import (
    ErrorCode, RoutineError, new_configuration_error, new_protocol_error,
    new_timeout_error, new_transient_error, retry_transient
)

logger = logging.getLogger(__name__)

COMPONENT = "console"


class ConsoleSession:
    """An authenticated connection to one server console."""

    def __init__(self, endpoint: ServerEndpoint, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter, timeout: float):
        self.endpoint = endpoint
        self._reader = reader
        self._writer = writer
        self._timeout = timeout
        self.closed = False

    @property
    def address(self) -> str:
        return f"{self.endpoint.console.host}:{self.endpoint.console.port}"

    async def send(self, command: str) -> str:
        """Write one command and return its reply line."""
        reply = await self.exchange(command)
        if reply.startswith("ERR"):
            raise new_protocol_error("send", f"{self.address} rejected '{command.split(' ')[0]}': {reply}") \
                .with_context("server", self.endpoint.name)
        return reply

    async def exchange(self, command: str) -> str:
        """Write one line and read one line without interpreting the reply."""
        if self.closed:
            raise new_protocol_error("send", f"session to {self.address} is closed")
        if '\n' in command or '\r' in command:
            raise new_protocol_error("send", "command must be a single line")

        try:
            self._writer.write(f"{command}\n".encode('utf-8'))
            await asyncio.wait_for(self._writer.drain(), self._timeout)
            raw = await asyncio.wait_for(self._reader.readline(), self._timeout)
        except asyncio.TimeoutError as e:
            raise new_timeout_error(
                COMPONENT, "send", f"no reply from {self.address} within {self._timeout:.0f}s", e
            ).with_context("server", self.endpoint.name)
        except OSError as e:
            raise new_protocol_error("send", f"connection to {self.address} lost", e) \
                .with_context("server", self.endpoint.name)
        except ValueError as e:
            raise new_protocol_error("send", f"reply from {self.address} exceeds the line limit", e) \
                .with_context("server", self.endpoint.name)

        if not raw:
            raise new_protocol_error("send", f"{self.address} closed the connection") \
                .with_context("server", self.endpoint.name)
        try:
            reply = raw.decode('utf-8').rstrip('\r\n')
        except UnicodeDecodeError as e:
            raise new_protocol_error("send", f"undecodable reply from {self.address}", e) \
                .with_context("server", self.endpoint.name)

        return reply

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing console connection to {self.address}: {e}")


class ConsoleClient:
    """Opens console sessions and sends lifecycle commands."""

    def __init__(self, config: ConsoleConfig):
        self.config = config

    async def connect(self, endpoint: ServerEndpoint) -> ConsoleSession:
        """Connect and authenticate, retrying once after a connection failure."""
        if endpoint.console is None:
            raise new_configuration_error("connect", f"{endpoint.name} has no console target configured")
        return await retry_transient(
            lambda: self._connect_once(endpoint),
            backoff=self.config.retry_backoff.total_seconds(),
            description=f"console connect to {endpoint.name}",
        )

    async def _connect_once(self, endpoint: ServerEndpoint) -> ConsoleSession:
        target = endpoint.console
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(target.host, target.port),
                self.config.connect_timeout.total_seconds(),
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise new_transient_error(
                COMPONENT, "connect", f"cannot reach console at {target.host}:{target.port}", e
            ).with_context("server", endpoint.name)

        session = ConsoleSession(endpoint, reader, writer, self.config.timeout.total_seconds())
        try:
            reply = await session.exchange(f"AUTH {self.config.password}")
        except RoutineError:
            await session.close()
            raise
        if not reply.startswith("OK"):
            await session.close()
            raise RoutineError(
                ErrorCode.AUTHENTICATION, COMPONENT, "connect",
                f"console at {session.address} refused authentication: {reply}"
            ).with_context("server", endpoint.name)
        return session

    async def send(self, session: ConsoleSession, command: str) -> str:
        logger.debug(f"[{session.endpoint.name}] > {command.split(' ')[0]}")
        return await session.send(command)

    async def close(self, session: ConsoleSession):
        await session.close()

    @asynccontextmanager
    async def session(self, endpoint: ServerEndpoint) -> AsyncIterator[ConsoleSession]:
        """Connected session that is closed on every exit path."""
        session = await self.connect(endpoint)
        try:
            yield session
        finally:
            await session.close()

    async def run(self, endpoint: ServerEndpoint, commands: List[str]) -> List[str]:
        """Run commands in order over a single session."""
        replies = []
        async with self.session(endpoint) as session:
            for command in commands:
                replies.append(await self.send(session, command))
        return replies

    async def broadcast_warning(self, endpoint: ServerEndpoint, message: str) -> str:
        """Broadcast a message to every player on the server."""
        replies = await self.run(endpoint, [f"say {message}"])
        logger.info(f"[{endpoint.name}] Broadcast restart warning")
        return replies[0]

    async def flush(self, endpoint: ServerEndpoint) -> str:
        """Force the server to write world state to disk."""
        replies = await self.run(endpoint, [self.config.flush_command])
        logger.info(f"[{endpoint.name}] Flushed world state")
        return replies[0]
