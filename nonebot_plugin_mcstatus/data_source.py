# minestat.py - A Minecraft server status checker
# Copyright (C) 2016-2023 Lloyd Dilley, Felix Ern (MindSolve)
# http://www.dilley.me/
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License along
# with this program; if not, write to the Free Software Foundation, Inc.,
# 51 Franklin Street, Fifth Floor, Boston, MA 02110-1301 USA.
#
# 本文件仅保留 1.7+ 的 JSON SLP 协议，并改写为 asyncio 实现
#
# 由于 wiki.vg 站点已关闭，现在你可以在
# https://minecraft.wiki/w/Minecraft_Wiki:Projects/wiki.vg_merge#Project_pages
# 找到原始内容的副本

import asyncio
import contextlib
from datetime import timedelta
from enum import Enum, IntEnum
from time import perf_counter
from typing import Awaitable, TypeVar

from nonebot import logger

from .exceptions import (
    ConnectError,
    FrameError,
    MCStatusError,
    ProtocolError,
    QueryTimeoutError,
)
from .models import (
    DEFAULT_PORT,
    AddressConfig,
    LatencyMeasurement,
    QueryResult,
    StatusResult,
    parse_status,
)
from .protocol import (
    encode_packet,
    pack_long,
    pack_string,
    pack_ushort,
    pack_varint,
    read_packet,
    unpack_long,
    unpack_string,
)

T = TypeVar("T")

DEFAULT_TIMEOUT = 5.0
"""默认超时时间（秒），对每个阶段分别生效"""
DEFAULT_PROTOCOL_VERSION = 47
"""握手包中声明的协议版本"""
DEFAULT_PING_PAYLOAD = 299792458
"""ping 包的负载，可以是任意 64 位整数"""

HANDSHAKE_ID = 0x00
STATUS_REQUEST_ID = 0x00
STATUS_RESPONSE_ID = 0x00
PING_ID = 0x01
PONG_ID = 0x01


class NextState(IntEnum):
    """握手包中声明的下一个状态"""

    STATUS = 1
    LOGIN = 2
    """本客户端不会使用"""


class SessionState(Enum):
    """
    `HandshakeSession` 的状态

    `DISCONNECTED -> CONNECTED -> HANDSHAKE_SENT -> AWAITING_STATUS -> STATUS_RECEIVED`，
    任意一步出错都会进入 `FAILED`。
    """

    def __str__(self) -> str:
        return str(self.name)

    DISCONNECTED = 0
    CONNECTED = 1
    HANDSHAKE_SENT = 2
    AWAITING_STATUS = 3
    STATUS_RECEIVED = 4
    FAILED = -1


class HandshakeSession:
    """
    与一台服务器的一次 SLP 会话。

    连接只属于这一个会话，离开 `async with` 时（无论成功、出错、超时还是被取消）
    都会被关闭，不会被复用。
    """

    def __init__(self, address: AddressConfig, timeout: float = DEFAULT_TIMEOUT):
        self.address: AddressConfig = address
        self.timeout: float = timeout
        self.state: SessionState = SessionState.DISCONNECTED
        self.protocol_version: int | None = None
        """握手时声明的协议版本"""
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    async def __aenter__(self) -> "HandshakeSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<HandshakeSession {self.address.host}:{self.address.port} {self.state}>"

    async def close(self) -> None:
        if self._writer is None:
            return
        writer, self._writer, self._reader = self._writer, None, None
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()

    def _expect_state(self, *states: SessionState) -> None:
        if self.state not in states:
            current, self.state = self.state, SessionState.FAILED
            expected = ", ".join(str(state) for state in states)
            raise ProtocolError(f"Session is {current}, expected one of: {expected}")

    async def _run(self, phase: str, aw: Awaitable[T]) -> T:
        """Bound one step by the timeout and map low-level errors to typed ones."""
        host, port = self.address.host, self.address.port
        try:
            return await asyncio.wait_for(aw, self.timeout)
        except asyncio.TimeoutError as e:
            self.state = SessionState.FAILED
            raise QueryTimeoutError(host, port, phase, self.timeout) from e
        except MCStatusError:
            self.state = SessionState.FAILED
            raise
        except OSError as e:
            self.state = SessionState.FAILED
            raise ConnectError(host, port, e.strerror or str(e)) from e

    async def _send(self, packet_id: int, body: bytes = b"") -> None:
        assert self._writer is not None
        self._writer.write(encode_packet(packet_id, body))
        await self._writer.drain()

    async def _receive(self, expected_id: int) -> bytes:
        assert self._reader is not None
        packet_id, body = await read_packet(self._reader)
        if packet_id != expected_id:
            raise ProtocolError(
                f"Unexpected packet id 0x{packet_id:02x}, expected 0x{expected_id:02x}"
            )
        return body

    async def connect(self) -> None:
        """Open the TCP stream to the configured address."""
        self._expect_state(SessionState.DISCONNECTED)
        host, port = self.address.host, self.address.port
        logger.debug(f"Connecting to {host}:{port}")
        try:
            self._reader, self._writer = await self._run(
                "connect", asyncio.open_connection(host, port)
            )
        except (UnicodeError, ValueError) as e:
            # 主机名无法编码（IDNA 标签过长、包含 NUL 等）
            self.state = SessionState.FAILED
            raise ConnectError(host, port, str(e)) from e
        self.state = SessionState.CONNECTED

    async def send_handshake(
        self,
        protocol_version: int = DEFAULT_PROTOCOL_VERSION,
        next_state: NextState = NextState.STATUS,
    ) -> None:
        """
        Send the Handshake packet.

        The body is the protocol version, the server address as a string, the
        port as an unsigned short and the intended next state, which is always
        `NextState.STATUS` for this client.
        """
        self._expect_state(SessionState.CONNECTED)
        body = (
            pack_varint(protocol_version)
            + pack_string(self.address.host)
            + pack_ushort(self.address.port)
            + pack_varint(next_state)
        )
        await self._run("handshake", self._send(HANDSHAKE_ID, body))
        self.protocol_version = protocol_version
        self.state = SessionState.HANDSHAKE_SENT

    async def request_status(self) -> StatusResult:
        """
        Send the empty Status Request and parse the single Status Response.

        The response body is one length-prefixed UTF-8 JSON string.
        """
        self._expect_state(SessionState.HANDSHAKE_SENT)
        self.state = SessionState.AWAITING_STATUS

        async def exchange() -> StatusResult:
            await self._send(STATUS_REQUEST_ID)
            body = await self._receive(STATUS_RESPONSE_ID)
            payload, end = unpack_string(body)
            if end != len(body):
                logger.debug(f"Ignoring {len(body) - end} trailing bytes after status")
            return parse_status(payload)

        status = await self._run("status", exchange())
        self.state = SessionState.STATUS_RECEIVED
        return status

    async def ping(self, payload: int = DEFAULT_PING_PAYLOAD) -> int:
        """
        Send a Ping and wait for the Pong.

        :param payload: Any signed 64-bit integer
        :return: The payload echoed by the server. Some servers do not echo it
            exactly, so it is returned for the caller to check if it cares.
        """
        self._expect_state(SessionState.HANDSHAKE_SENT, SessionState.STATUS_RECEIVED)

        async def exchange() -> int:
            await self._send(PING_ID, pack_long(payload))
            return unpack_long(await self._receive(PONG_ID))

        return await self._run("ping", exchange())


class LatencyProbe:
    """测量 ping/pong 往返时间"""

    def __init__(self, payload: int = DEFAULT_PING_PAYLOAD, verify: bool = False):
        self.payload = payload
        self.verify = verify

    async def measure(self, session: HandshakeSession) -> LatencyMeasurement:
        start_time = perf_counter()
        received = await session.ping(self.payload)
        elapsed = timedelta(seconds=perf_counter() - start_time)

        measurement = LatencyMeasurement(elapsed, self.payload, received)
        if not measurement.echo_matches:
            if self.verify:
                session.state = SessionState.FAILED
                raise ProtocolError(
                    f"Pong payload {received} does not match ping payload {self.payload}"
                )
            logger.debug(f"Pong payload {received} differs from {self.payload}")
        return measurement


async def query_status(
    host: str,
    port: int = DEFAULT_PORT,
    timeout: float = DEFAULT_TIMEOUT,
    *,
    protocol_version: int = DEFAULT_PROTOCOL_VERSION,
    ping_payload: int = DEFAULT_PING_PAYLOAD,
    verify_pong: bool = False,
) -> QueryResult:
    """
    Query the status and latency of a modern (MC Java >= 1.7) server.

    See https://minecraft.wiki/w/Minecraft_Wiki:Projects/wiki.vg_merge/Server_List_Ping

    :param host: Hostname or IP address of the server
    :param port: TCP port of the server
    :param timeout: Timeout in seconds for each network step
    :param protocol_version: Protocol version announced in the handshake
    :param ping_payload: Payload of the ping packet
    :param verify_pong: Fail with `ProtocolError` if the pong is not an exact echo
    :raises MCStatusError: On any connection, framing, protocol or parsing error
    """
    address = AddressConfig.build(host).with_port(port)

    async with HandshakeSession(address, timeout) as session:
        try:
            await session.connect()
            await session.send_handshake(protocol_version)
            status = await session.request_status()
            latency = await LatencyProbe(ping_payload, verify_pong).measure(session)
        except (FrameError, ProtocolError) as e:
            logger.debug(f"{session!r}: {e}")
            raise

    logger.debug(
        f"{host}:{port} answered with {status.players.online}/{status.players.max} "
        f"players in {latency.milliseconds}ms"
    )
    return QueryResult(status, latency)
