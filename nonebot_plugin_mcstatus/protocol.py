"""
Minecraft Java 版网络协议的基础编码。

每个数据包的格式都是 `VarInt(长度) + VarInt(数据包 ID) + 数据`，
其中长度只计算 ID 和数据部分的字节数。

协议文档详见
https://minecraft.wiki/w/Minecraft_Wiki:Projects/wiki.vg_merge/Protocol
"""

import asyncio
import struct
from typing import BinaryIO

from .exceptions import FrameError, FrameErrorKind, ProtocolError

VARINT_MAX_BYTES = 5
"""VarInt 最多占用 5 字节（32 位）"""


def pack_varint(value: int) -> bytes:
    """
    Pack an int into a VarInt.

    Negative values are written as their 32-bit two's complement, which always
    takes the full five bytes.
    """
    if not -(1 << 31) <= value < (1 << 31):
        raise ValueError(f"{value} does not fit in a VarInt")

    value &= 0xFFFFFFFF
    ordinal = b""

    while True:
        byte = value & 0x7F
        value >>= 7
        ordinal += struct.pack("B", byte | (0x80 if value > 0 else 0))

        if value == 0:
            break

    return ordinal


def unpack_varint(data: bytes | bytearray, offset: int = 0) -> tuple[int, int]:
    """
    Unpack a VarInt starting at `offset`.

    :param data: Buffer holding the VarInt
    :param offset: Index of the first VarInt byte
    :return: The signed 32-bit value and the offset just past the VarInt
    """
    result = 0
    for i in range(VARINT_MAX_BYTES):
        if offset + i >= len(data):
            raise FrameError(
                FrameErrorKind.TRUNCATED_STREAM, "Data ended in the middle of a VarInt"
            )

        byte = data[offset + i]
        result |= (byte & 0x7F) << 7 * i

        if not byte & 0x80:
            if result & (1 << 31):
                result -= 1 << 32
            return result, offset + i + 1

    raise FrameError(FrameErrorKind.VARINT_OVERFLOW, "VarInt is longer than 5 bytes")


def pack_string(value: str) -> bytes:
    """Pack a string as its UTF-8 byte length followed by the bytes."""
    encoded = value.encode("utf-8")
    return pack_varint(len(encoded)) + encoded


def unpack_string(data: bytes | bytearray, offset: int = 0) -> tuple[str, int]:
    length, offset = unpack_varint(data, offset)
    if length < 0:
        raise FrameError(FrameErrorKind.INVALID_LENGTH, "Negative string length")
    end = offset + length
    if end > len(data):
        raise FrameError(
            FrameErrorKind.TRUNCATED_STREAM,
            f"String declares {length} bytes but only {len(data) - offset} remain",
        )

    try:
        return bytes(data[offset:end]).decode("utf-8"), end
    except UnicodeDecodeError as e:
        raise ProtocolError(f"String is not valid UTF-8: {e}") from e


def pack_ushort(value: int) -> bytes:
    return struct.pack(">H", value)


def pack_long(value: int) -> bytes:
    return struct.pack(">q", value)


def unpack_long(data: bytes | bytearray) -> int:
    if len(data) != 8:
        raise ProtocolError(f"Expected an 8 byte long, got {len(data)} bytes")
    return struct.unpack(">q", data)[0]


def encode_packet(packet_id: int, body: bytes = b"") -> bytes:
    """Frame `body` with its packet id and the total length prefix."""
    data = pack_varint(packet_id) + body
    return pack_varint(len(data)) + data


def _split_packet(data: bytes) -> tuple[int, bytes]:
    packet_id, offset = unpack_varint(data)
    return packet_id, data[offset:]


def _check_length(length: int) -> int:
    if length < 0:
        raise FrameError(
            FrameErrorKind.INVALID_LENGTH, f"Packet declares negative length {length}"
        )
    return length


def decode_packet(stream: BinaryIO) -> tuple[int, bytes]:
    """
    Read one framed packet from a blocking binary stream.

    :param stream: Anything with a `read(n)` method, e.g. `io.BytesIO`
    :return: The packet id and the packet body
    """
    prefix = bytearray()
    while True:
        byte = stream.read(1)
        if not byte:
            raise FrameError(
                FrameErrorKind.TRUNCATED_STREAM, "Stream closed while reading length"
            )
        prefix += byte
        if not byte[0] & 0x80 or len(prefix) >= VARINT_MAX_BYTES:
            break

    length = _check_length(unpack_varint(prefix)[0])
    data = stream.read(length) if length else b""
    if len(data) != length:
        raise FrameError(
            FrameErrorKind.TRUNCATED_STREAM,
            f"Packet declares {length} bytes but stream closed after {len(data)}",
        )

    return _split_packet(data)


async def read_packet(reader: asyncio.StreamReader) -> tuple[int, bytes]:
    """Read one framed packet from an asyncio stream, see `decode_packet()`."""
    prefix = bytearray()
    try:
        while True:
            prefix += await reader.readexactly(1)
            if not prefix[-1] & 0x80 or len(prefix) >= VARINT_MAX_BYTES:
                break

        length = _check_length(unpack_varint(prefix)[0])
        data = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise FrameError(
            FrameErrorKind.TRUNCATED_STREAM,
            f"Stream closed after {len(e.partial)} of {e.expected} expected bytes",
        ) from e

    return _split_packet(data)
