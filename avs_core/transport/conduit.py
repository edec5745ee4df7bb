"""有界的内存字节管道。

生产者线程向管道 write()，HTTP 传输层把管道当作可迭代请求体逐块读取。
缓冲区达到上限后 write() 阻塞，直到传输层取走数据；任意一侧出错都会让另一侧退出：

- 生产者 close(error) 后，消费者读完已缓冲数据即抛出该错误；
- 传输层提前结束时调用 abort()，阻塞中的 write() 抛出 EncodingError。
"""

import threading
from collections import deque
from typing import Deque, Iterator, Optional

from avs_core.domain.exceptions import EncodingError


class BodyConduit:
    """连接 multipart 写入方与 HTTP 传输层的有界阻塞管道。"""

    def __init__(self, max_buffer: int = 64 * 1024):
        if max_buffer < 1:
            raise ValueError("max_buffer must be positive")
        self._max_buffer = max_buffer
        self._chunks: Deque[bytes] = deque()
        self._buffered = 0
        self._closed = False
        self._aborted = False
        self._error: Optional[BaseException] = None
        self._cond = threading.Condition()
        self.bytes_written = 0

    # ---- 生产者侧 ----

    def write(self, data: bytes) -> int:
        view = memoryview(data)
        total = len(view)
        with self._cond:
            while view:
                while self._buffered >= self._max_buffer and not (self._closed or self._aborted):
                    self._cond.wait()
                if self._aborted:
                    raise EncodingError(code="CONDUIT_ABORTED", message="request body reader went away")
                if self._closed:
                    raise EncodingError(code="CONDUIT_CLOSED", message="write to closed conduit")
                room = self._max_buffer - self._buffered
                chunk = bytes(view[:room])
                view = view[room:]
                self._chunks.append(chunk)
                self._buffered += len(chunk)
                self.bytes_written += len(chunk)
                self._cond.notify_all()
        return total

    def close(self, error: Optional[BaseException] = None) -> None:
        """结束写入；error 非空时消费者在读完缓冲数据后收到该错误。"""

        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._error = error
            self._cond.notify_all()

    # ---- 消费者侧 ----

    def abort(self) -> None:
        """消费者不再读取，唤醒并终止阻塞中的生产者。"""

        with self._cond:
            self._aborted = True
            self._chunks.clear()
            self._buffered = 0
            self._cond.notify_all()

    def __iter__(self) -> Iterator[bytes]:
        while True:
            with self._cond:
                while not self._chunks and not self._closed and not self._aborted:
                    self._cond.wait()
                if self._chunks:
                    chunk = self._chunks.popleft()
                    self._buffered -= len(chunk)
                    self._cond.notify_all()
                elif self._error is not None:
                    raise self._error
                else:
                    return
            yield chunk
