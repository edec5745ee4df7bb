"""multipart 编解码。

写入侧：MultipartWriter 把 multipart/form-data 帧直接写进任意带 write(bytes) 的对象
（通常是 BodyConduit），encode_json 负责写一个 JSON 字段。

读取侧：parse_multipart 从响应的 Content-Type 中取出 boundary，返回按需拉取字节的
MultipartReader。所有 Part 共享同一条底层字节流，必须按顺序读取；
请求下一个 Part 时会自动丢弃当前 Part 未读完的部分。
"""

import json
import re
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
from uuid import uuid4

import httpx

from avs_core.domain.exceptions import AvsError, EncodingError, ProtocolError, StreamError

JSON_CONTENT_TYPE = "application/json"
MAX_HEADER_BYTES = 16 * 1024

_TOKEN = r"[!#$%&'*+.^_`|~0-9A-Za-z-]+"
_MEDIA_TYPE_RE = re.compile(rf"^\s*({_TOKEN})/({_TOKEN})\s*$")
_PARAM_RE = re.compile(r'\s*([^=;\s]+)\s*=\s*("(?:[^"\\]|\\.)*"|[^;]*)\s*')


def parse_media_type(value: str) -> Tuple[str, Dict[str, str]]:
    """解析 Content-Type，返回 (小写媒体类型, 参数字典)。"""

    if not value or not value.strip():
        raise ProtocolError(code="PROTOCOL_ERROR", message="missing media type")
    head, _, rest = value.partition(";")
    m = _MEDIA_TYPE_RE.match(head)
    if m is None:
        raise ProtocolError(code="PROTOCOL_ERROR", message=f"malformed media type {value!r}")
    params: Dict[str, str] = {}
    for segment in _split_params(rest):
        pm = _PARAM_RE.fullmatch(segment)
        if pm is None:
            raise ProtocolError(code="PROTOCOL_ERROR", message=f"malformed media type parameter {segment!r}")
        raw = pm.group(2).strip()
        if raw.startswith('"'):
            raw = re.sub(r"\\(.)", r"\1", raw[1:-1])
        params[pm.group(1).lower()] = raw
    return f"{m.group(1)}/{m.group(2)}".lower(), params


def _split_params(rest: str) -> List[str]:
    # 引号内可能出现分号
    segments: List[str] = []
    current: List[str] = []
    quoted = False
    escaped = False
    for ch in rest:
        if escaped:
            escaped = False
        elif ch == "\\" and quoted:
            escaped = True
        elif ch == '"':
            quoted = not quoted
        elif ch == ";" and not quoted:
            segments.append("".join(current))
            current = []
            continue
        current.append(ch)
    segments.append("".join(current))
    return [s for s in segments if s.strip()]


# ---- 写入 ----


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


class PartWriter:
    """MultipartWriter.create_* 返回的单个 part 写入器。"""

    def __init__(self, owner: "MultipartWriter"):
        self._owner = owner

    def write(self, data: bytes) -> int:
        if self._owner._current is not self:
            raise EncodingError(code="ENCODING_ERROR", message="write to a finished multipart part")
        self._owner._write(data)
        return len(data)


class MultipartWriter:
    """流式 multipart/form-data 写入器。

    不缓存任何内容，每次 write 都直接落到 sink 上；
    sink 为 BodyConduit 时，缓冲写满会阻塞到 HTTP 层读走数据。
    """

    def __init__(self, sink, boundary: Optional[str] = None):
        self._sink = sink
        self.boundary = boundary or uuid4().hex + uuid4().hex[:8]
        self._current: Optional[PartWriter] = None
        self._closed = False

    def form_data_content_type(self) -> str:
        boundary = self.boundary
        if re.search(r"[()<>@,;:\\\"/\[\]?= ]", boundary):
            boundary = f'"{boundary}"'
        return f"multipart/form-data; boundary={boundary}"

    def create_part(self, headers: List[Tuple[str, str]]) -> PartWriter:
        if self._closed:
            raise EncodingError(code="ENCODING_ERROR", message="multipart writer already closed")
        lines = []
        if self._current is not None:
            lines.append(f"\r\n--{self.boundary}\r\n")
        else:
            lines.append(f"--{self.boundary}\r\n")
        for name, value in headers:
            lines.append(f"{name}: {value}\r\n")
        lines.append("\r\n")
        self._current = PartWriter(self)
        self._write("".join(lines).encode("utf-8"))
        return self._current

    def create_form_field(self, name: str, content_type: Optional[str] = None) -> PartWriter:
        headers = [("Content-Disposition", f'form-data; name="{_quote(name)}"')]
        if content_type:
            headers.append(("Content-Type", content_type))
        return self.create_part(headers)

    def create_form_file(
        self,
        field_name: str,
        filename: str,
        content_type: str = "application/octet-stream",
    ) -> PartWriter:
        disposition = f'form-data; name="{_quote(field_name)}"; filename="{_quote(filename)}"'
        return self.create_part([("Content-Disposition", disposition), ("Content-Type", content_type)])

    def close(self) -> None:
        if self._closed:
            return
        prefix = "\r\n" if self._current is not None else ""
        self._current = None
        self._closed = True
        self._write(f"{prefix}--{self.boundary}--\r\n".encode("utf-8"))

    def _write(self, data: bytes) -> None:
        try:
            self._sink.write(data)
        except AvsError:
            raise
        except (OSError, ValueError) as e:
            raise EncodingError(code="ENCODING_ERROR", message=f"multipart write failed: {e}") from e


def encode_json(writer: MultipartWriter, field_name: str, value: Any) -> None:
    """把 value 序列化为 JSON，作为名为 field_name 的表单字段写入 writer。"""

    try:
        data = json.dumps(value, ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncodingError(
            code="ENCODING_ERROR",
            message=f"cannot serialize {field_name}: {e}",
            field=field_name,
        ) from e
    part = writer.create_form_field(field_name, content_type=f"{JSON_CONTENT_TYPE}; charset=UTF-8")
    part.write(data)


# ---- 读取 ----


class _ByteSource:
    """包装响应字节迭代器，按需补充缓冲区，并把传输层异常转换为 StreamError。"""

    def __init__(self, chunks: Iterator[bytes]):
        self._chunks = chunks
        self.buf = bytearray()
        self.eof = False

    def fill(self) -> bool:
        while not self.eof:
            try:
                chunk = next(self._chunks)
            except StopIteration:
                self.eof = True
                return False
            except httpx.HTTPError as e:
                raise StreamError(code="STREAM_ERROR", message=f"read failed: {e}") from e
            if chunk:
                self.buf.extend(chunk)
                return True
        return False

    def ensure(self, n: int) -> bool:
        while len(self.buf) < n:
            if not self.fill():
                return False
        return True


class Part:
    """multipart 中的一个 part：头部 + 只能顺序读取一次的正文。"""

    def __init__(self, reader: "MultipartReader", headers: httpx.Headers, index: int):
        self._reader = reader
        self.headers = headers
        self.index = index
        self._done = False

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def content_id(self) -> str:
        return self.headers.get("content-id", "")

    @property
    def media_type(self) -> str:
        """声明的媒体类型；未声明 Content-Type 时为空字符串。"""

        if not self.content_type.strip():
            return ""
        return parse_media_type(self.content_type)[0]

    def iter_bytes(self) -> Iterator[bytes]:
        if self._reader._current is not self:
            raise ProtocolError(code="PROTOCOL_ERROR", message=f"part {self.index} already superseded")
        while not self._done:
            data, finished = self._reader._read_body_chunk()
            if finished:
                self._done = True
            if data:
                yield data

    def read(self) -> bytes:
        return b"".join(self.iter_bytes())

    def discard(self) -> None:
        for _ in self.iter_bytes():
            pass

    def __repr__(self) -> str:
        return f"<Part {self.index} headers={dict(self.headers)!r}>"


class MultipartReader:
    """顺序读取 multipart 消息的 part。

    next_part() 在结束分隔符处，或正文在两个 part 之间干净结束时返回 None；
    头部/正文被截断时抛出 ProtocolError，传输中断时抛出 StreamError。
    """

    def __init__(self, chunks: Iterable[bytes], boundary: str):
        if not boundary:
            raise ProtocolError(code="PROTOCOL_ERROR", message="empty multipart boundary")
        self._src = _ByteSource(iter(chunks))
        token = boundary.encode("utf-8")
        self._dash_boundary = b"--" + token
        self._delimiter = b"\r\n--" + token
        self._state = "start"
        self._current: Optional[Part] = None
        self._count = 0

    def __iter__(self) -> Iterator[Part]:
        while True:
            part = self.next_part()
            if part is None:
                return
            yield part

    def next_part(self) -> Optional[Part]:
        if self._current is not None:
            current = self._current
            if not current._done:
                current.discard()
            self._current = None
        if self._state == "done":
            return None
        if self._state == "start" and not self._skip_preamble():
            self._state = "done"
            return None
        if not self._consume_boundary_tail():
            self._state = "done"
            return None
        headers = self._read_headers()
        part = Part(self, headers, self._count)
        self._count += 1
        self._current = part
        self._state = "part"
        return part

    def _skip_preamble(self) -> bool:
        src = self._src
        marker = self._dash_boundary
        # 分隔符只能出现在正文开头或行首
        src.ensure(len(marker))
        if src.buf.startswith(marker):
            del src.buf[: len(marker)]
            self._state = "boundary"
            return True
        seen_data = False
        line_marker = b"\n" + marker
        while True:
            idx = src.buf.find(line_marker)
            if idx >= 0:
                del src.buf[: idx + len(line_marker)]
                self._state = "boundary"
                return True
            if src.buf.strip():
                seen_data = True
            keep = len(line_marker) - 1
            if len(src.buf) > keep:
                del src.buf[: len(src.buf) - keep]
            if not src.fill():
                if seen_data or src.buf.strip():
                    raise ProtocolError(code="PROTOCOL_ERROR", message="multipart body has no opening boundary")
                return False

    def _consume_boundary_tail(self) -> bool:
        src = self._src
        src.ensure(2)
        if not src.buf:
            return False
        if src.buf.startswith(b"--"):
            return False
        while True:
            while src.buf[:1] in (b" ", b"\t"):
                del src.buf[:1]
            if src.buf or not src.fill():
                break
        src.ensure(2)
        if src.buf.startswith(b"\r\n"):
            del src.buf[:2]
        elif src.buf.startswith(b"\n"):
            del src.buf[:1]
        else:
            raise ProtocolError(code="PROTOCOL_ERROR", message="malformed multipart boundary line")
        return True

    def _read_headers(self) -> httpx.Headers:
        src = self._src
        while True:
            src.ensure(2)
            if src.buf.startswith(b"\r\n"):
                del src.buf[:2]
                return httpx.Headers()
            idx = src.buf.find(b"\r\n\r\n")
            if idx >= 0:
                raw = bytes(src.buf[:idx])
                del src.buf[: idx + 4]
                return self._parse_headers(raw)
            if len(src.buf) > MAX_HEADER_BYTES:
                raise ProtocolError(code="PROTOCOL_ERROR", message="multipart part headers too large")
            if not src.fill():
                raise ProtocolError(code="PROTOCOL_ERROR", message="unexpected end of body in part headers")

    @staticmethod
    def _parse_headers(raw: bytes) -> httpx.Headers:
        items: List[Tuple[str, str]] = []
        for line in raw.decode("utf-8", errors="replace").split("\r\n"):
            if line[:1] in (" ", "\t") and items:
                name, value = items[-1]
                items[-1] = (name, f"{value} {line.strip()}")
                continue
            name, sep, value = line.partition(":")
            if not sep or not name.strip():
                raise ProtocolError(code="PROTOCOL_ERROR", message=f"malformed part header {line!r}")
            items.append((name.strip(), value.strip()))
        return httpx.Headers(items)

    def _read_body_chunk(self) -> Tuple[bytes, bool]:
        src = self._src
        delim = self._delimiter
        while True:
            idx = src.buf.find(delim)
            if idx >= 0:
                data = bytes(src.buf[:idx])
                del src.buf[: idx + len(delim)]
                self._state = "boundary"
                return data, True
            safe = len(src.buf) - (len(delim) - 1)
            if safe > 0:
                data = bytes(src.buf[:safe])
                del src.buf[:safe]
                return data, False
            if not src.fill():
                raise ProtocolError(code="PROTOCOL_ERROR", message="unexpected end of body in part")


def parse_multipart(response: httpx.Response) -> MultipartReader:
    """根据响应的 Content-Type 构造 MultipartReader。"""

    content_type = response.headers.get("content-type")
    if not content_type:
        raise ProtocolError(code="PROTOCOL_ERROR", message="response has no content type")
    media_type, params = parse_media_type(content_type)
    if not media_type.startswith("multipart/"):
        raise ProtocolError(code="PROTOCOL_ERROR", message=f"expected multipart response, got {media_type}")
    boundary = params.get("boundary")
    if not boundary:
        raise ProtocolError(code="PROTOCOL_ERROR", message="multipart content type has no boundary")
    return MultipartReader(response.iter_bytes(), boundary)
