"""下行通道：服务端随时推送指令的长连接。

后台线程独占响应字节流，逐个读取 part、解码指令信封，
按到达顺序放入无界队列；调用方通过迭代 DirectiveStream 消费。

任何读取/解码错误都只会让流结束，不会抛给消费方；
结束原因保存在 DirectiveStream.error 中，并写入日志，便于排查。
"""

import queue
import threading
from typing import Iterator, Optional

import httpx

from avs_core.domain.exceptions import AvsError, TransportError
from avs_core.domain.models import Directive
from avs_core.infrastructure.logging.logger import logger
from avs_core.transport.envelope import decode_directive_envelope
from avs_core.transport.multipart import parse_multipart

_END = object()


class DirectiveStream:
    """可取消的指令序列。

    用法::

        with client.open_downchannel(token) as stream:
            for directive in stream:
                handle(directive)

    - 迭代在连接结束、出错或 close() 之后停止，从不抛异常。
    - error: 终止原因（打开失败时的分类错误，或后台读取/解码错误）；正常结束或主动关闭为 None。
    """

    def __init__(
        self,
        response: Optional[httpx.Response] = None,
        client: Optional[httpx.Client] = None,
        error: Optional[AvsError] = None,
    ):
        self._response = response
        self._client = client
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._stop = threading.Event()
        self._finished = threading.Event()
        self._ended = False
        self._error = error
        self._thread: Optional[threading.Thread] = None
        self.received = 0

    @classmethod
    def terminated(cls, error: Optional[AvsError] = None) -> "DirectiveStream":
        """构造一个已结束、不含任何指令的流。"""

        stream = cls(error=error)
        stream._finish()
        return stream

    # ---- 后台读取 ----

    def start(self) -> None:
        if self._thread is not None or self._response is None:
            return
        self._thread = threading.Thread(target=self._run, name="avs-downchannel", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        response = self._response
        try:
            reader = parse_multipart(response)
            for part in reader:
                if self._stop.is_set():
                    break
                directive = decode_directive_envelope(part.read())
                if self._stop.is_set():
                    break
                self.received += 1
                self._queue.put(directive)
        except AvsError as e:
            if not self._stop.is_set():
                self._error = e
                logger.warning(
                    f"downchannel terminated: {e.message}",
                    extra={"extra": {"error_code": e.code}},
                )
        except (httpx.HTTPError, httpx.StreamError, OSError, ValueError) as e:
            # close() 从另一线程关闭连接时，阻塞中的读取可能以这些异常返回
            if not self._stop.is_set():
                self._error = TransportError(code="NETWORK_ERROR", message=str(e))
                logger.warning(
                    f"downchannel terminated: {e}",
                    extra={"extra": {"error_code": "NETWORK_ERROR"}},
                    exc_info=True,
                )
        finally:
            self._release()
            self._finish()
        logger.info(
            "downchannel closed",
            extra={"extra": {"received": self.received, "stopped": self._stop.is_set()}},
        )

    def _release(self) -> None:
        if self._response is not None:
            self._response.close()
        if self._client is not None:
            self._client.close()

    def _finish(self) -> None:
        self._finished.set()
        self._queue.put(_END)

    # ---- 消费侧 ----

    def get(self, timeout: Optional[float] = None) -> Optional[Directive]:
        """返回下一条指令；流已结束时返回 None。

        指定 timeout 且期间没有新指令时抛出 queue.Empty。
        """

        if self._ended or self._stop.is_set():
            return None
        item = self._queue.get(timeout=timeout)
        if item is _END or self._stop.is_set():
            self._ended = True
            return None
        return item

    def __iter__(self) -> Iterator[Directive]:
        while True:
            directive = self.get()
            if directive is None:
                return
            yield directive

    def close(self) -> None:
        """放弃该流：后台线程不再投递指令并释放连接。"""

        if self._stop.is_set():
            return
        self._stop.set()
        self._queue.put(_END)
        if not self._finished.is_set() and self._response is not None:
            self._response.close()

    def join(self, timeout: Optional[float] = None) -> bool:
        """等待后台线程退出，返回是否已退出。"""

        if self._thread is not None:
            self._thread.join(timeout)
        return self._finished.is_set()

    @property
    def closed(self) -> bool:
        return self._finished.is_set() or self._stop.is_set()

    @property
    def error(self) -> Optional[AvsError]:
        return self._error

    def __enter__(self) -> "DirectiveStream":
        return self

    def __exit__(self, *exc) -> bool:
        self.close()
        return False
