import base64
import binascii
import contextlib
import re
import traceback
from typing import Literal

import dns.asyncresolver
import dns.exception
import dns.resolver
import idna
from nonebot import logger, require

from .config import ScopedConfig
from .exceptions import InvalidTargetError, MCStatusError
from .models import QueryResult

require("nonebot_plugin_alconna")
from nonebot_plugin_alconna import Image, Text, UniMessage


def handle_exception(e: BaseException) -> Text:
    error_message = str(e)
    logger.error(traceback.format_exc())
    return Text(f"[CrashHandle]{error_message}\n>>更多信息详见日志文件<<")


def build_error(e: Exception) -> Text:
    """查询错误直接以其消息回复，其他异常交给 `handle_exception`"""
    if isinstance(e, MCStatusError):
        logger.warning(f"Query failed: {e}")
        return Text(str(e))
    return handle_exception(e)


def build_result(result: QueryResult) -> str:
    """
    将查询结果组合为文本。

    第一行是服务器描述，随后是在线人数和玩家列表（每行一个），最后是延迟。
    服务器没有返回玩家列表时，玩家部分留空。

    :params result: `query_status()` 的返回值。
    """
    status = result.status
    players = "\n".join(status.players.names)
    return (
        f"{status.description.plain_text}"
        f"\nPlayers ({status.players.online}/{status.players.max}):"
        f"\n{players}"
        f"\nPing: {result.latency.milliseconds} ms"
    )


def decode_favicon(favicon: str | None) -> bytes | None:
    """解码 `data:image/png;base64,...` 格式的图标，格式不正确时返回 None"""
    if not favicon or "base64," not in favicon:
        return None
    # 部分旧服务器会在 base64 中插入换行
    data = "".join(favicon.split("base64,", 1)[1].split())
    try:
        return base64.b64decode(data, validate=True)
    except binascii.Error:
        return None


def build_message(result: QueryResult, show_favicon: bool = True) -> UniMessage:
    message = UniMessage(Text(build_result(result)))
    if show_favicon and (favicon := decode_favicon(result.status.favicon)):
        message.append(Image(raw=favicon))
    return message


def parse_host(host_name: str) -> tuple[str, int]:
    """
    解析主机名（可选端口）。

    该函数尝试从主机名中提取IP地址和端口号。如果主机名中未指定端口，
    则默认端口号为0。

    :params host_name: 主机名，可能包含端口。

    :returns: 一个元组，包含两个元素：
    - 第一个元素是主机的地址
    - 第二个元素是主机的端口号，如果主机名中未指定端口，则为0。
    """
    host_name = host_name.strip()
    pattern = r"(?:\[(.+?)\]|(.+?))(?:[:：](\d+))?$"
    if not (match := re.match(pattern, host_name)):
        return host_name, 0

    address = match[1] or match[2]
    port = int(match[3]) if match[3] else 0

    return address, port


def is_validity_address(address: str) -> bool:
    """
    判断给定的地址是否为有效的域名或IP地址。

    :params address: 需要验证的地址，可以是域名地址或IP地址。

    :returns: 如果地址有效则返回True，否则返回False。
    """

    return (is_domain(address)) or (is_ipv4(address)) or (is_ipv6(address))


def is_domain(address: str) -> bool:
    """
    判断给定的地址是否为域名。

    :params address: 需要验证的地址。

    :returns: 如果地址为域名则返回True，否则返回False。
    """
    try:
        punycode_address = idna.encode(address).decode("utf-8")
    except idna.IDNAError:
        return False

    domain_pattern = re.compile(
        r"^(?!-)(?:[A-Za-z0-9-]{1,63}\.)+(?:[A-Za-z]{2,}|xn--[A-Za-z0-9-]{2,})$|^(localhost)$"
    )
    return bool(domain_pattern.match(punycode_address))


def is_ipv4(address: str) -> bool:
    """
    判断给定的地址是否为IPv4地址。

    :params address: 需要验证的地址。

    :returns: 如果地址为IPv4地址则返回True，否则返回False。
    """
    ipv4_pattern = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")
    if not ipv4_pattern.match(address):
        return False

    return all(0 <= int(part) <= 255 for part in address.split("."))


def is_ipv6(address: str) -> bool:
    """判断给定的地址是否为IPv6地址。"""
    ipv6_pattern = re.compile(
        r"^\s*((([0-9A-Fa-f]{1,4}:){7}([0-9A-Fa-f]{1,4}|:))|(([0-9A-Fa-f]{1,4}:){6}(:[0-9A-Fa-f]{1,4}|((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3})|:))|(([0-9A-Fa-f]{1,4}:){5}(((:[0-9A-Fa-f]{1,4}){1,2})|:((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3})|:))|(([0-9A-Fa-f]{1,4}:){4}(((:[0-9A-Fa-f]{1,4}){1,3})|((:[0-9A-Fa-f]{1,4})?:((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}))|:))|(([0-9A-Fa-f]{1,4}:){3}(((:[0-9A-Fa-f]{1,4}){1,4})|((:[0-9A-Fa-f]{1,4}){0,2}:((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}))|:))|(([0-9A-Fa-f]{1,4}:){2}(((:[0-9A-Fa-f]{1,4}){1,5})|((:[0-9A-Fa-f]{1,4}){0,3}:((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}))|:))|(([0-9A-Fa-f]{1,4}:){1}(((:[0-9A-Fa-f]{1,4}){1,6})|((:[0-9A-Fa-f]{1,4}){0,4}:((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}))|:))|(:(((:[0-9A-Fa-f]{1,4}){1,7})|((:[0-9A-Fa-f]{1,4}){0,5}:((25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)(\.(25[0-5]|2[0-4]\d|1\d\d|[1-9]?\d)){3}))|:)))(%.+)?\s*$"
    )
    return bool(ipv6_pattern.match(address))


def get_ip_type(address: str) -> Literal["IPv4", "IPv6", "Domain"]:
    """获取地址类型"""
    if not is_validity_address(address):
        raise ValueError("Invalid address")
    if is_ipv4(address):
        return "IPv4"
    elif is_ipv6(address):
        return "IPv6"
    else:
        return "Domain"


async def resolve_srv(domain: str, timeout: float = 10) -> tuple[str, int] | None:
    """
    解析 `_minecraft._tcp` SRV 记录。

    IP 地址不会被解析；没有记录或者 DNS 查询失败时返回 None，
    由调用方使用默认端口。

    :params domain: 需要解析的域名。
    :params timeout: DNS 查询超时时间（秒）。

    :returns: SRV 记录指向的 (主机, 端口)，或 None。
    """
    if get_ip_type(domain) != "Domain":
        return None

    try:
        punycode_domain = idna.encode(domain).decode("utf-8")
    except idna.IDNAError:
        punycode_domain = domain

    with contextlib.suppress(
        dns.resolver.NoResolverConfiguration,
        dns.resolver.NoAnswer,
        dns.resolver.NXDOMAIN,
        dns.resolver.NoNameservers,
        dns.exception.Timeout,
    ):
        resolver = dns.asyncresolver.Resolver()
        resolver.lifetime = timeout
        response = await resolver.resolve(f"_minecraft._tcp.{punycode_domain}", "SRV")
        for rdata in response:
            target = str(rdata.target).rstrip(".")  # type: ignore
            logger.debug(f"SRV {domain} -> {target}:{rdata.port}")  # type: ignore
            return target, rdata.port  # type: ignore

    return None


async def resolve_target(host: str | None, config: ScopedConfig) -> tuple[str, int]:
    """
    确定要查询的服务器。

    未给出地址时使用配置中的 `server`；未指定端口时先尝试 SRV 记录，
    再使用配置中的默认端口。

    :params host: 命令参数，格式为 host 或 host:port，可以为空。
    :params config: 插件配置。

    :returns: (地址, 端口)
    """
    host = host or config.server
    if not host:
        raise InvalidTargetError("Which server? Usage: mcstatus host[:port]")

    address, port = parse_host(host)
    if not 0 <= port <= 65535:
        raise InvalidTargetError(f"Invalid port: {port}")
    if not is_validity_address(address):
        raise InvalidTargetError(f"Invalid address: {address}")

    if not port and config.resolve_srv and (srv := await resolve_srv(address)):
        return srv
    return address, port or config.port
