"""统一异常模型。

引擎对外抛出的所有错误都继承自 AvsError，
便于调用方按类型区分：传输层失败、协议违例、服务端结构化异常、请求体编码失败。
"""

from typing import Optional


class AvsError(Exception):
    """异常基类。

    Attributes:
        code: 机器可读错误码（如 "PROTOCOL_ERROR"）。
        message: 用户可读错误信息。
        http_status: 对应的 HTTP 状态码；与响应无关的错误为 None。
        extra: 其他补充字段（例如 part 头部、原始状态行等）。
    """

    def __init__(self, code: str, message: str, http_status: Optional[int] = None, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class TransportError(AvsError):
    """协议层以下的连接/IO 错误，例如连接失败、超时。引擎内部从不重试。"""


class StreamError(TransportError):
    """读取响应体过程中传输中断。"""


class ProtocolError(AvsError):
    """multipart 帧格式错误、Content-Type 无法解析、未知 part、缺少 directive 字段等。"""


class ServerException(AvsError):
    """非 2xx 响应体中解析出的结构化异常（payload.code / payload.message）。"""


class RequestFailedError(AvsError):
    """非成功状态且响应体无法解析为结构化异常时的通用错误。"""


class SendError(AvsError):
    """请求体未能完整发送。"""


class EncodingError(SendError):
    """元数据序列化、音频读取或 multipart 写入失败。"""


class ValidationError(AvsError):
    """参数或配置校验失败。"""
