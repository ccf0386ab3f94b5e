from nonebot.plugin import get_plugin_config
from pydantic import BaseModel, Field


class ScopedConfig(BaseModel):
    server: str | None = Field(default=None)
    """不带参数查询时使用的服务器地址，格式为 host 或 host:port"""
    port: int = Field(default=25565, ge=0, le=65535)
    """未指定端口且没有 SRV 记录时使用的端口"""
    timeout: float = Field(default=5.0, gt=0)
    """每个网络阶段的超时时间（秒）"""
    protocol_version: int = Field(default=47)
    """握手包中声明的协议版本"""
    verify_pong: bool = Field(default=False)
    """pong 负载与 ping 不一致时是否视为查询失败"""
    resolve_srv: bool = Field(default=True)
    """未指定端口时是否解析 _minecraft._tcp SRV 记录"""
    show_favicon: bool = Field(default=True)
    """是否在回复中附带服务器图标"""


class Config(BaseModel):
    mcs: ScopedConfig = Field(default_factory=ScopedConfig)
    """MCStatus Config"""


config: ScopedConfig = get_plugin_config(Config).mcs
