"""HTTP 状态分类。

必须在读取响应正文之前调用，且每个响应只调用一次：
失败分支会读完整个正文尝试解析结构化异常。
"""

import json
from dataclasses import dataclass
from typing import Optional

import httpx

from avs_core.domain.exceptions import AvsError, RequestFailedError, ServerException
from avs_core.domain.models import ExceptionPayload


@dataclass
class StatusOutcome:
    """分类结果。

    - ok: 200 / 204 为 True。
    - has_body: 仅 200 为 True，表示后续还有 multipart 正文需要解析。
    - error: ok 为 False 时的错误对象。
    """

    ok: bool
    has_body: bool = False
    error: Optional[AvsError] = None


def classify_status(response: httpx.Response) -> StatusOutcome:
    if response.status_code == 200:
        return StatusOutcome(ok=True, has_body=True)
    if response.status_code == 204:
        return StatusOutcome(ok=True, has_body=False)
    return StatusOutcome(ok=False, error=_failure_error(response))


def _status_text(response: httpx.Response) -> str:
    reason = response.reason_phrase
    return f"{response.status_code} {reason}" if reason else str(response.status_code)


def _failure_error(response: httpx.Response) -> AvsError:
    # 正文读失败或不是合法 JSON 时退化为通用错误
    try:
        data = json.loads(response.read() or b"null")
    except (httpx.HTTPError, ValueError):
        data = None
    exception = ExceptionPayload.from_json(data)
    if exception.code:
        return ServerException(
            code=exception.code,
            message=exception.message,
            http_status=response.status_code,
        )
    status = _status_text(response)
    return RequestFailedError(
        code="REQUEST_FAILED",
        message=f"request failed with {status}",
        http_status=response.status_code,
        status=status,
    )
