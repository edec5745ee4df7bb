"""AVS Core 顶层包。

该包实现语音助手 multipart-over-HTTP 协议的客户端引擎：
流式上传事件（JSON 元数据 + 可选音频）、解析 multipart 响应、
维持服务端推送指令的下行通道，以及统一的 HTTP 状态分类。
"""

from avs_core.client import AvsClient, create_client
from avs_core.domain.exceptions import (
    AvsError,
    EncodingError,
    ProtocolError,
    RequestFailedError,
    SendError,
    ServerException,
    StreamError,
    TransportError,
    ValidationError,
)
from avs_core.domain.models import Directive, Request, Response
from avs_core.transport.downchannel import DirectiveStream

__all__ = [
    "AvsClient",
    "create_client",
    "AvsError",
    "EncodingError",
    "ProtocolError",
    "RequestFailedError",
    "SendError",
    "ServerException",
    "StreamError",
    "TransportError",
    "ValidationError",
    "Directive",
    "Request",
    "Response",
    "DirectiveStream",
]
