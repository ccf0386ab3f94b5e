import asyncio
import contextlib
from typing import Awaitable, Callable

Handler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


@contextlib.asynccontextmanager
async def mock_server(handler: Handler):
    """在 127.0.0.1 的随机端口上启动一个测试服务器，返回端口号"""

    async def wrapped(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            await handler(reader, writer)
        finally:
            writer.close()

    server = await asyncio.start_server(wrapped, "127.0.0.1", 0)
    async with server:
        yield server.sockets[0].getsockname()[1]


async def drain_until_eof(reader: asyncio.StreamReader) -> None:
    while await reader.read(1024):
        pass


def track_sockets(monkeypatch) -> list:
    """记录 `asyncio.open_connection` 打开的套接字"""
    sockets = []
    open_connection = asyncio.open_connection

    async def tracking_open_connection(*args, **kwargs):
        reader, writer = await open_connection(*args, **kwargs)
        sockets.append(writer.get_extra_info("socket"))
        return reader, writer

    monkeypatch.setattr(asyncio, "open_connection", tracking_open_connection)
    return sockets
