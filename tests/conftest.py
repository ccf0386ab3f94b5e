import nonebot
import pytest


def pytest_configure(config: pytest.Config) -> None:
    """插件在导入时读取配置，需要先初始化 nonebot"""
    nonebot.init(driver="~none")
    nonebot.load_plugin("nonebot_plugin_mcstatus")
