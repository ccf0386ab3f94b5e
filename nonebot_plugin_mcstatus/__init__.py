from nonebot import require
from nonebot.plugin import PluginMetadata, inherit_supported_adapters

from .config import Config
from .config import config as plugin_config
from .data_source import query_status
from .utils import build_error, build_message, resolve_target

require("nonebot_plugin_alconna")
from arclet.alconna import Alconna, Args
from nonebot_plugin_alconna import Arparma, on_alconna

__version__ = "0.1.0"

__plugin_meta__ = PluginMetadata(
    name="Minecraft服务器状态",
    description="通过 Server List Ping 查询 Minecraft Java 版服务器状态与延迟/Minecraft Java server status and latency via Server List Ping",  # noqa: E501
    type="application",
    supported_adapters=inherit_supported_adapters("nonebot_plugin_alconna"),
    config=Config,
    usage="""
    Minecraft Java 版服务器状态查询
    用法：
        mcstatus [ip]:[端口] / mcstatus [ip] / mcstatus
        不带参数时查询配置中的服务器
    usage:
        mcstatus ip:port / mcstatus ip / status
    """.strip(),
    extra={"version": __version__},
)

status = on_alconna(
    Alconna("mcstatus", Args["host?", str]),
    aliases={"status"},
    priority=10,
    block=True,
)


@status.handle()
async def _(p: Arparma):
    try:
        address, port = await resolve_target(p.query("host"), plugin_config)
        result = await query_status(
            address,
            port,
            plugin_config.timeout,
            protocol_version=plugin_config.protocol_version,
            verify_pong=plugin_config.verify_pong,
        )
    except Exception as e:
        message = build_error(e)
    else:
        message = build_message(result, plugin_config.show_favicon)

    await status.send(message, reply_to=True)
