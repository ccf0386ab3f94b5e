import asyncio
import socket

import pytest
import ujson

from helpers import drain_until_eof, mock_server, track_sockets
from nonebot_plugin_mcstatus.data_source import (
    HandshakeSession,
    LatencyProbe,
    NextState,
    SessionState,
    query_status,
)
from nonebot_plugin_mcstatus.exceptions import (
    ConnectError,
    FrameError,
    FrameErrorKind,
    MalformedDescription,
    MCStatusError,
    ProtocolError,
    QueryTimeoutError,
)
from nonebot_plugin_mcstatus.models import AddressConfig, PlainDescription
from nonebot_plugin_mcstatus.protocol import (
    encode_packet,
    pack_long,
    pack_string,
    read_packet,
    unpack_long,
    unpack_string,
    unpack_varint,
)

STATUS_JSON = {
    "description": "A Server",
    "players": {
        "online": 2,
        "max": 20,
        "sample": [{"name": "Alice", "id": "x"}, {"name": "Bob", "id": "y"}],
    },
    "version": {"name": "1.20", "protocol": 763},
}


def slp_server(status=STATUS_JSON, pong=None, received=None):
    """按协议应答的服务器；`received` 用于记录收到的数据包"""

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        while True:
            try:
                packet_id, body = await read_packet(reader)
            except FrameError:
                return
            if received is not None:
                received.append((packet_id, body))

            if packet_id == 0x00 and not body:
                writer.write(encode_packet(0x00, pack_string(ujson.dumps(status))))
            elif packet_id == 0x01:
                payload = unpack_long(body) if pong is None else pong
                writer.write(encode_packet(0x01, pack_long(payload)))
            await writer.drain()

    return handler


@pytest.mark.asyncio
async def test_query_status_end_to_end():
    received = []
    async with mock_server(slp_server(received=received)) as port:
        result = await query_status("127.0.0.1", port, timeout=2)

    status = result.status
    assert status.description == PlainDescription("A Server")
    assert "\n".join(status.players.names) == "Alice\nBob"
    assert (status.players.online, status.players.max) == (2, 20)
    assert status.version.protocol == 763
    assert result.latency.round_trip.total_seconds() >= 0
    assert result.latency.sent == 299792458
    assert result.latency.received == 299792458
    assert result.latency.echo_matches

    handshake_id, handshake = received[0]
    assert handshake_id == 0x00
    version, offset = unpack_varint(handshake)
    host, offset = unpack_string(handshake, offset)
    assert (version, host) == (47, "127.0.0.1")
    assert int.from_bytes(handshake[offset : offset + 2], "big") == port
    assert unpack_varint(handshake, offset + 2)[0] == NextState.STATUS
    assert received[1] == (0x00, b"")
    assert received[2] == (0x01, pack_long(299792458))


@pytest.mark.asyncio
async def test_query_status_custom_protocol_version():
    received = []
    async with mock_server(slp_server(received=received)) as port:
        await query_status("127.0.0.1", port, timeout=2, protocol_version=-1)

    assert unpack_varint(received[0][1])[0] == -1


@pytest.mark.asyncio
async def test_mismatched_pong_is_reported():
    async with mock_server(slp_server(pong=1)) as port:
        result = await query_status("127.0.0.1", port, timeout=2)

    assert result.latency.received == 1
    assert not result.latency.echo_matches


@pytest.mark.asyncio
async def test_mismatched_pong_with_verification():
    async with mock_server(slp_server(pong=1)) as port:
        with pytest.raises(ProtocolError):
            await query_status("127.0.0.1", port, timeout=2, verify_pong=True)


@pytest.mark.asyncio
async def test_unexpected_status_packet_id():
    async def handler(reader, writer):
        await read_packet(reader)
        await read_packet(reader)
        writer.write(encode_packet(0x02, pack_string("{}")))
        await writer.drain()
        await drain_until_eof(reader)

    async with mock_server(handler) as port:
        with pytest.raises(ProtocolError):
            await query_status("127.0.0.1", port, timeout=2)


@pytest.mark.asyncio
async def test_unexpected_pong_packet_id():
    async def handler(reader, writer):
        await read_packet(reader)
        await read_packet(reader)
        writer.write(encode_packet(0x00, pack_string(ujson.dumps(STATUS_JSON))))
        await read_packet(reader)
        writer.write(encode_packet(0x00, pack_long(0)))
        await writer.drain()
        await drain_until_eof(reader)

    async with mock_server(handler) as port:
        with pytest.raises(ProtocolError):
            await query_status("127.0.0.1", port, timeout=2)


@pytest.mark.asyncio
async def test_malformed_status_json():
    status = dict(STATUS_JSON, description=5)
    async with mock_server(slp_server(status=status)) as port:
        with pytest.raises(MalformedDescription):
            await query_status("127.0.0.1", port, timeout=2)


@pytest.mark.asyncio
async def test_server_closes_mid_response():
    async def handler(reader, writer):
        await read_packet(reader)
        await read_packet(reader)
        writer.write(encode_packet(0x00, pack_string(ujson.dumps(STATUS_JSON)))[:10])
        await writer.drain()

    async with mock_server(handler) as port:
        with pytest.raises(FrameError) as exc_info:
            await query_status("127.0.0.1", port, timeout=2)
    assert exc_info.value.kind is FrameErrorKind.TRUNCATED_STREAM


@pytest.mark.asyncio
async def test_timeout_releases_connection(monkeypatch):
    sockets = track_sockets(monkeypatch)

    async def handler(reader, writer):
        await drain_until_eof(reader)

    async with mock_server(handler) as port:
        with pytest.raises(QueryTimeoutError) as exc_info:
            await query_status("127.0.0.1", port, timeout=0.2)

    assert exc_info.value.phase == "status"
    assert len(sockets) == 1
    assert sockets[0].fileno() == -1


@pytest.mark.asyncio
async def test_connection_refused():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    with pytest.raises(ConnectError) as exc_info:
        await query_status("127.0.0.1", port, timeout=2)
    assert exc_info.value.port == port
    assert isinstance(exc_info.value, MCStatusError)


@pytest.mark.asyncio
@pytest.mark.parametrize("host", ["a" * 64 + ".example.com", "bad\x00host"])
async def test_unencodable_host(host):
    session = HandshakeSession(AddressConfig(host), timeout=2)
    async with session:
        with pytest.raises(ConnectError) as exc_info:
            await session.connect()
    assert exc_info.value.host == host
    assert session.state is SessionState.FAILED

    with pytest.raises(ConnectError):
        await query_status(host, timeout=2)


@pytest.mark.asyncio
async def test_session_states_and_close():
    async with mock_server(slp_server()) as port:
        session = HandshakeSession(AddressConfig("127.0.0.1", port), timeout=2)
        async with session:
            assert session.state is SessionState.DISCONNECTED
            await session.connect()
            assert session.state is SessionState.CONNECTED
            await session.send_handshake()
            assert session.state is SessionState.HANDSHAKE_SENT
            assert session.protocol_version == 47
            status = await session.request_status()
            assert session.state is SessionState.STATUS_RECEIVED
            assert status.players.online == 2
            latency = await LatencyProbe(payload=-42).measure(session)
            assert latency.received == -42
        assert session._writer is None


@pytest.mark.asyncio
async def test_ping_right_after_handshake():
    async with mock_server(slp_server()) as port:
        async with HandshakeSession(AddressConfig("127.0.0.1", port), 2) as session:
            await session.connect()
            await session.send_handshake()
            assert await session.ping(12345) == 12345


@pytest.mark.asyncio
async def test_operation_out_of_order():
    session = HandshakeSession(AddressConfig("127.0.0.1"))
    with pytest.raises(ProtocolError):
        await session.request_status()
    assert session.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_cancellation_closes_connection(monkeypatch):
    sockets = track_sockets(monkeypatch)

    async def handler(reader, writer):
        await drain_until_eof(reader)

    async with mock_server(handler) as port:
        task = asyncio.create_task(query_status("127.0.0.1", port, timeout=10))
        while not sockets:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert sockets[0].fileno() == -1
