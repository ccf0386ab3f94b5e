"""
Server List Ping 查询过程中可能抛出的异常。

所有异常都继承自 `MCStatusError`，调用方只需捕获这一个基类即可，
异常消息可以直接作为回复文本使用。
"""

from enum import Enum


class MCStatusError(Exception):
    """所有查询错误的基类"""

    def __init__(self, message: str = "Server List Ping failed"):
        self.message = message
        super().__init__(self.message)


class QueryError(MCStatusError):
    """与某个具体地址相关的错误"""

    def __init__(self, host: str, port: int, message: str | None = None):
        self.host = host
        self.port = port
        super().__init__(message or f"Failed to query {host}:{port}")


class ConnectError(QueryError):
    """无法建立连接（DNS 解析失败、连接被拒绝、主机不可达）或连接中途断开"""

    def __init__(self, host: str, port: int, reason: str | None = None):
        self.reason = reason
        message = f"Could not connect to {host}:{port}"
        if reason:
            message += f": {reason}"
        super().__init__(host, port, message)


class QueryTimeoutError(QueryError):
    """某个阶段在超时时间内没有完成"""

    def __init__(self, host: str, port: int, phase: str, timeout: float):
        self.phase = phase
        self.timeout = timeout
        super().__init__(
            host, port, f"Timed out ({timeout}s) during {phase} with {host}:{port}"
        )


class FrameErrorKind(Enum):
    def __str__(self) -> str:
        return str(self.name)

    TRUNCATED_STREAM = 0
    """数据流在声明的长度读完之前结束"""

    VARINT_OVERFLOW = 1
    """VarInt 超过 5 字节"""

    INVALID_LENGTH = 2
    """数据包声明了负数长度"""


class FrameError(MCStatusError):
    """数据包帧格式错误"""

    def __init__(self, kind: FrameErrorKind, message: str | None = None):
        self.kind = kind
        super().__init__(message or f"Malformed packet frame ({kind})")


class InvalidTargetError(MCStatusError):
    """命令中给出的服务器地址或端口无效，或者没有可查询的服务器"""


class ProtocolError(MCStatusError):
    """意外的数据包 ID 或会话状态"""


class StatusParseError(MCStatusError):
    """状态 JSON 的结构不符合要求"""


class MalformedPayload(StatusParseError):
    """状态响应不是一个 JSON 对象"""


class MalformedDescription(StatusParseError):
    """`description` 既不是字符串，也不是带有 `text` 的对象"""


class MissingField(StatusParseError):
    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Status response is missing '{field}'")


class MalformedField(StatusParseError):
    def __init__(self, field: str, expected: str):
        self.field = field
        self.expected = expected
        super().__init__(f"Status response field '{field}' must be {expected}")
