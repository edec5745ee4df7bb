"""事件交互、下行通道与心跳的客户端实现。

本模块负责：

1. 把 Request 编码为 multipart/form-data 请求体，边编码边发送（生产者线程 + BodyConduit）。
2. 调用 HTTP 接口并把网络异常包装为 TransportError。
3. 先做状态分类，再把 multipart 响应解析为 Response（指令 + 按 Content-ID 索引的内容）。
4. 打开下行通道，返回由后台线程持续填充的 DirectiveStream。

每次调用都从 client_factory 取得独立的 httpx.Client，调用之间不共享可变状态，
因此同一个 AvsClient 可以被多个线程并发使用。
"""

import threading
from typing import Callable, Dict, Iterable, Optional

import httpx

from avs_core.config.settings import settings
from avs_core.domain.exceptions import (
    AvsError,
    EncodingError,
    ProtocolError,
    TransportError,
    ValidationError,
)
from avs_core.domain.models import AudioSource, Request, Response
from avs_core.infrastructure.logging.logger import logger
from avs_core.transport.conduit import BodyConduit
from avs_core.transport.downchannel import DirectiveStream
from avs_core.transport.envelope import decode_directive_envelope
from avs_core.transport.multipart import (
    JSON_CONTENT_TYPE,
    MultipartWriter,
    PartWriter,
    encode_json,
    parse_multipart,
)
from avs_core.transport.status import classify_status

ClientFactory = Callable[[], httpx.Client]


class AvsClient:
    """协议引擎入口。

    - send: 一次事件上报，返回 Response。
    - open_downchannel: 打开下行通道，返回 DirectiveStream。
    - ping: 心跳，成功返回 None，失败抛出分类后的错误。
    """

    def __init__(self, cfg=settings, client_factory: Optional[ClientFactory] = None):
        self._settings = cfg
        self._client_factory = client_factory or self._default_client

    def _default_client(self) -> httpx.Client:
        return httpx.Client(timeout=self._settings.http_timeout, trust_env=False)

    def _url(self, path: str) -> str:
        return f"{self._settings.endpoint_url}{path}"

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "User-Agent": self._settings.user_agent,
        }

    @staticmethod
    def _require_token(token: str) -> None:
        if not token:
            # 配置缺失走 ValidationError，在任何网络请求之前失败
            raise ValidationError(code="MISSING_ACCESS_TOKEN", message="access token not set")

    # ---- 事件交互 ----

    def send(self, request: Request) -> Response:
        """发送一次事件，返回完整的 Response 或抛出第一个遇到的错误。

        步骤：
        1. 启动生产者线程，把 metadata 与音频写进有界管道。
        2. 以管道为请求体发起 POST，传输层边读边发。
        3. 状态分类：失败直接抛出；204 返回空 Response；200 逐个解析 part。
        """

        self._require_token(request.token)
        conduit = BodyConduit(self._settings.conduit_buffer_size)
        writer = MultipartWriter(conduit)
        headers = self._headers(request.token)
        headers["Content-Type"] = writer.form_data_content_type()
        producer = threading.Thread(
            target=self._write_body,
            args=(writer, conduit, request),
            name="avs-body-writer",
            daemon=True,
        )
        producer.start()
        try:
            with self._client_factory() as client:
                http_request = client.build_request(
                    "POST",
                    self._url(self._settings.events_path),
                    content=conduit,
                    headers=headers,
                )
                try:
                    resp = client.send(http_request, stream=True)
                except httpx.RequestError as e:
                    # 网络错误：DNS 失败、连接超时等
                    raise TransportError(code="NETWORK_ERROR", message=str(e)) from e
                try:
                    return self._read_event_response(resp)
                finally:
                    resp.close()
        except AvsError as e:
            logger.warning(
                f"event exchange failed: {e.message}",
                extra={"extra": {"error_code": e.code, "http_status": e.http_status}},
            )
            raise
        finally:
            # 传输层提前结束时唤醒仍在写的生产者
            conduit.abort()
            producer.join()

    def _write_body(self, writer: MultipartWriter, conduit: BodyConduit, request: Request) -> None:
        error: Optional[BaseException] = None
        try:
            encode_json(writer, "metadata", request.metadata)
            if request.audio is not None:
                part = writer.create_form_file("audio", "audio.wav")
                self._copy_audio(request.audio, part)
            writer.close()
        except AvsError as e:
            error = e
        except Exception as e:
            # 生产者线程中的异常只能经由管道交给传输层
            error = EncodingError(code="ENCODING_ERROR", message=f"request body write failed: {e}")
            error.__cause__ = e
        finally:
            conduit.close(error)

    def _copy_audio(self, audio: AudioSource, part: PartWriter) -> int:
        total = 0
        for chunk in self._iter_audio(audio):
            part.write(chunk)
            total += len(chunk)
        return total

    def _iter_audio(self, audio: AudioSource) -> Iterable[bytes]:
        size = self._settings.audio_chunk_size
        read = getattr(audio, "read", None)
        chunks = iter(lambda: read(size), b"") if read is not None else iter(audio)
        while True:
            try:
                chunk = next(chunks)
            except StopIteration:
                return
            except (OSError, ValueError) as e:
                raise EncodingError(code="ENCODING_ERROR", message=f"audio read failed: {e}") from e
            if chunk:
                yield bytes(chunk)

    def _read_event_response(self, resp: httpx.Response) -> Response:
        outcome = classify_status(resp)
        if not outcome.ok:
            raise outcome.error
        response = Response(request_id=resp.headers.get(self._settings.request_id_header, ""))
        if not outcome.has_body:
            # 204：没有需要解析的内容
            return response
        for part in parse_multipart(resp):
            media_type = part.media_type
            data = part.read()
            content_id = part.content_id
            if content_id:
                # 可被指令引用的内容，Content-ID 去掉首尾的尖括号
                response.content[content_id[1:-1]] = data
            elif media_type == JSON_CONTENT_TYPE:
                response.directives.append(decode_directive_envelope(data))
            else:
                raise ProtocolError(code="PROTOCOL_ERROR", message=f"unhandled part {part!r}")
        logger.info(
            "event exchange finished",
            extra={"extra": {
                "request_id": response.request_id,
                "directives": len(response.directives),
                "content": len(response.content),
            }},
        )
        return response

    # ---- 下行通道 ----

    def open_downchannel(self, token: str) -> DirectiveStream:
        """打开下行通道。

        初始响应失败或为 204 时返回已结束的流（失败原因在 stream.error）；
        连接本身建立失败时抛出 TransportError。
        """

        self._require_token(token)
        client = self._client_factory()
        timeout = httpx.Timeout(self._settings.http_timeout, read=self._settings.downchannel_read_timeout)
        http_request = client.build_request(
            "GET",
            self._url(self._settings.directives_path),
            headers=self._headers(token),
            timeout=timeout,
        )
        try:
            resp = client.send(http_request, stream=True)
        except httpx.RequestError as e:
            client.close()
            raise TransportError(code="NETWORK_ERROR", message=str(e)) from e
        outcome = classify_status(resp)
        if not outcome.ok or not outcome.has_body:
            resp.close()
            client.close()
            if outcome.error is not None:
                logger.warning(
                    f"downchannel rejected: {outcome.error.message}",
                    extra={"extra": {"error_code": outcome.error.code, "http_status": resp.status_code}},
                )
            return DirectiveStream.terminated(outcome.error)
        stream = DirectiveStream(resp, client)
        stream.start()
        logger.info("downchannel opened", extra={"extra": {"status": resp.status_code}})
        return stream

    # ---- 心跳 ----

    def ping(self, token: str) -> None:
        """确认会话仍然存活；不重试，失败时抛出分类后的错误。"""

        self._require_token(token)
        with self._client_factory() as client:
            try:
                resp = client.get(self._url(self._settings.ping_path), headers=self._headers(token))
            except httpx.RequestError as e:
                raise TransportError(code="NETWORK_ERROR", message=str(e)) from e
        outcome = classify_status(resp)
        if not outcome.ok:
            logger.warning(
                f"ping failed: {outcome.error.message}",
                extra={"extra": {"error_code": outcome.error.code, "http_status": resp.status_code}},
            )
            raise outcome.error
