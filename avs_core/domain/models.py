"""协议层共享的数据模型。

- Directive: 服务端下发的指令，对引擎而言是不透明的 JSON 文档。
- Request: 一次事件上报（token + metadata + 可选音频流）。
- Response: 一次事件交互的结果（请求ID、按到达顺序排列的指令、按 Content-ID 索引的二进制内容）。
- ExceptionPayload: 非成功响应中携带的结构化异常。
"""

from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Union


# 指令的具体 schema 由调用方负责，这里只当作 JSON 对象传递
Directive = Dict[str, Any]

# 音频来源：带 read(n) 的二进制文件对象，或按序产出 bytes 的可迭代对象
AudioSource = Union[BinaryIO, Iterable[bytes]]


@dataclass
class Request:
    """一次事件请求。

    - token: Bearer 访问令牌，不能为空。
    - metadata: 序列化为 multipart 中 "metadata" 字段的 JSON 文档（不含 token 与音频）。
    - audio: 可选音频流，长度不限，只会被顺序读取一次。
    """

    token: str
    metadata: Dict[str, Any]
    audio: Optional[AudioSource] = None


@dataclass
class Response:
    """一次事件交互的结果。

    - request_id: 响应头中的请求ID，可能为空字符串。
    - directives: 按 multipart 中的到达顺序排列。
    - content: Content-ID（已去掉首尾尖括号）到二进制内容的映射。
    """

    request_id: str = ""
    directives: List[Directive] = field(default_factory=list)
    content: Dict[str, bytes] = field(default_factory=dict)


@dataclass
class ExceptionPayload:
    """服务端结构化异常，对应 {"payload": {"code": ..., "message": ...}}。"""

    code: str = ""
    message: str = ""

    @classmethod
    def from_json(cls, data: Any) -> "ExceptionPayload":
        if not isinstance(data, dict):
            return cls()
        payload = data.get("payload")
        if not isinstance(payload, dict):
            return cls()
        code = payload.get("code")
        message = payload.get("message")
        return cls(
            code=code if isinstance(code, str) else "",
            message=message if isinstance(message, str) else "",
        )
