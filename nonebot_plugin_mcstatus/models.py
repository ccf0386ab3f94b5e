"""
查询相关的数据结构，以及状态 JSON 的解析。
"""

from dataclasses import dataclass, field, replace
from datetime import timedelta
import re
from typing import Any

import ujson

from .exceptions import (
    MalformedDescription,
    MalformedField,
    MalformedPayload,
    MissingField,
)

DEFAULT_PORT = 25565
"""SLP 查询的默认 TCP 端口"""


@dataclass(frozen=True)
class AddressConfig:
    """查询目标"""

    host: str
    port: int = DEFAULT_PORT

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"Port {self.port} is not an unsigned 16-bit value")

    @classmethod
    def build(cls, host: str) -> "AddressConfig":
        return cls(host)

    def with_port(self, port: int) -> "AddressConfig":
        return replace(self, port=port)


def motd_strip_formatting(raw_motd: str | dict | list) -> str:
    """
    去除 MOTD 中所有格式代码。
    支持 JSON 聊天组件（以字典或列表形式）以及旧版 `§` 格式代码

    :param raw_motd: 原始 MOTD
    """
    stripped_motd = ""

    if isinstance(raw_motd, str):
        stripped_motd = re.sub(r"§.", "", raw_motd)

    elif isinstance(raw_motd, dict):
        stripped_motd = motd_strip_formatting(raw_motd.get("text", ""))

        if isinstance(raw_motd.get("extra"), list):
            for sub in raw_motd["extra"]:
                stripped_motd += motd_strip_formatting(sub)

    elif isinstance(raw_motd, list):
        for sub in raw_motd:
            stripped_motd += motd_strip_formatting(sub)

    return stripped_motd


@dataclass(frozen=True)
class PlainDescription:
    """`"description": "..."`"""

    text: str

    @property
    def plain_text(self) -> str:
        return motd_strip_formatting(self.text)


@dataclass(frozen=True)
class ObjectDescription:
    """`"description": {"text": "...", "extra": [...]}`"""

    text: str
    extra: tuple = field(default=(), hash=False)

    @property
    def plain_text(self) -> str:
        return motd_strip_formatting({"text": self.text, "extra": list(self.extra)})


ServerDescription = PlainDescription | ObjectDescription


@dataclass(frozen=True)
class PlayerSample:
    name: str
    id: str = ""


@dataclass(frozen=True)
class PlayerInfo:
    online: int
    max: int
    sample: tuple[PlayerSample, ...] | None = None
    """服务器关闭玩家列表时为 None，与空列表分开保存"""

    @property
    def names(self) -> list[str]:
        return [player.name for player in self.sample or ()]


@dataclass(frozen=True)
class VersionInfo:
    name: str
    protocol: int


@dataclass(frozen=True)
class StatusResult:
    description: ServerDescription
    players: PlayerInfo
    version: VersionInfo
    favicon: str | None = None
    """base64 编码的服务器图标（`data:image/png;base64,...`）"""


@dataclass(frozen=True)
class LatencyMeasurement:
    round_trip: timedelta
    sent: int
    received: int

    @property
    def milliseconds(self) -> int:
        return int(self.round_trip / timedelta(milliseconds=1))

    @property
    def echo_matches(self) -> bool:
        """部分服务端不会原样返回 ping 的负载，这里只做报告"""
        return self.sent == self.received


@dataclass(frozen=True)
class QueryResult:
    status: StatusResult
    latency: LatencyMeasurement


def _require(obj: dict, key: str, path: str) -> Any:
    if key not in obj:
        raise MissingField(path)
    return obj[key]


def _require_int(obj: dict, key: str, path: str) -> int:
    value = _require(obj, key, path)
    # bool 是 int 的子类
    if not isinstance(value, int) or isinstance(value, bool):
        raise MalformedField(path, "an integer")
    return value


def _require_str(obj: dict, key: str, path: str) -> str:
    value = _require(obj, key, path)
    if not isinstance(value, str):
        raise MalformedField(path, "a string")
    return value


def _require_object(obj: dict, key: str, path: str) -> dict:
    value = _require(obj, key, path)
    if not isinstance(value, dict):
        raise MalformedField(path, "an object")
    return value


def _parse_description(value: Any) -> ServerDescription:
    if isinstance(value, str):
        return PlainDescription(value)
    if isinstance(value, dict) and isinstance(value.get("text"), str):
        extra = value.get("extra", [])
        return ObjectDescription(
            value["text"], tuple(extra) if isinstance(extra, list) else ()
        )
    raise MalformedDescription(
        f"Status response 'description' must be a string or an object with 'text', "
        f"got {type(value).__name__}"
    )


def _parse_sample(value: Any) -> tuple[PlayerSample, ...]:
    if not isinstance(value, list):
        raise MalformedField("players.sample", "a list")

    sample = []
    for index, entry in enumerate(value):
        path = f"players.sample[{index}]"
        if not isinstance(entry, dict):
            raise MalformedField(path, "an object")
        if not isinstance(entry.get("name"), str):
            raise MalformedField(f"{path}.name", "a string")
        player_id = entry.get("id", "")
        if not isinstance(player_id, str):
            raise MalformedField(f"{path}.id", "a string")
        sample.append(PlayerSample(entry["name"], player_id))
    return tuple(sample)


def parse_status(raw: str | bytes | bytearray) -> StatusResult:
    """
    Parse the JSON body of a Status Response.

    Required fields are never substituted with defaults: anything missing or of
    the wrong kind raises a `StatusParseError`. `players.sample` (absent or
    null) and `favicon` are optional, and `description` may be either a plain
    string or a chat component object.

    :param raw: The JSON text, as received in the Status Response packet
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPayload(f"Status response is not valid UTF-8: {e}") from e

    try:
        payload = ujson.loads(raw)
    except ValueError as e:
        raise MalformedPayload(f"Status response is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedPayload("Status response is not a JSON object")

    description = _parse_description(_require(payload, "description", "description"))

    players_obj = _require_object(payload, "players", "players")
    players = PlayerInfo(
        online=_require_int(players_obj, "online", "players.online"),
        max=_require_int(players_obj, "max", "players.max"),
        sample=(
            None
            if players_obj.get("sample") is None
            else _parse_sample(players_obj["sample"])
        ),
    )

    version_obj = _require_object(payload, "version", "version")
    version = VersionInfo(
        name=_require_str(version_obj, "name", "version.name"),
        protocol=_require_int(version_obj, "protocol", "version.protocol"),
    )

    favicon = payload.get("favicon")
    if favicon is not None and not isinstance(favicon, str):
        raise MalformedField("favicon", "a string")

    return StatusResult(description, players, version, favicon)
