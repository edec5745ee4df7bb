"""客户端入口。

- AvsClient: 事件交互、下行通道、心跳。
- create_client: 按全局配置构造 AvsClient，可注入自定义的 httpx.Client 工厂。
"""

from typing import Optional

from avs_core.config.settings import settings
from avs_core.client.avs_client import AvsClient, ClientFactory


def create_client(client_factory: Optional[ClientFactory] = None) -> AvsClient:
    """使用全局 settings 创建 AvsClient。"""

    return AvsClient(settings, client_factory=client_factory)


__all__ = ["AvsClient", "ClientFactory", "create_client"]
