"""指令信封解码：part 正文形如 {"directive": {...}}。"""

import json

from avs_core.domain.exceptions import ProtocolError
from avs_core.domain.models import Directive


def decode_directive_envelope(data: bytes) -> Directive:
    try:
        envelope = json.loads(data)
    except ValueError as e:
        raise ProtocolError(
            code="PROTOCOL_ERROR",
            message=f"invalid directive envelope: {e}",
            body=data[:256].decode("utf-8", errors="replace"),
        ) from e
    directive = envelope.get("directive") if isinstance(envelope, dict) else None
    if directive is None:
        raise ProtocolError(
            code="PROTOCOL_ERROR",
            message=f"missing directive {data[:256].decode('utf-8', errors='replace')}",
        )
    return directive
