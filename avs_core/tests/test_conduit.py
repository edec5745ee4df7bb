import threading

import pytest

from avs_core.domain.exceptions import EncodingError
from avs_core.transport.conduit import BodyConduit


def test_conduit_streams_all_bytes_in_order():
    conduit = BodyConduit(max_buffer=16)
    payload = bytes(range(256)) * 20

    def produce():
        for i in range(0, len(payload), 100):
            conduit.write(payload[i:i + 100])
        conduit.close()

    t = threading.Thread(target=produce)
    t.start()
    received = b"".join(conduit)
    t.join(5)
    assert received == payload
    assert conduit.bytes_written == len(payload)


def test_conduit_blocks_when_full():
    conduit = BodyConduit(max_buffer=4)
    t = threading.Thread(target=lambda: (conduit.write(b"12345678"), conduit.close()))
    t.start()
    t.join(0.2)
    assert t.is_alive()
    assert b"".join(conduit) == b"12345678"
    t.join(5)
    assert not t.is_alive()


def test_conduit_close_with_error_reaches_reader():
    conduit = BodyConduit()
    conduit.write(b"abc")
    conduit.close(EncodingError(code="ENCODING_ERROR", message="audio read failed"))
    chunks = []
    with pytest.raises(EncodingError):
        for chunk in conduit:
            chunks.append(chunk)
    assert chunks == [b"abc"]


def test_conduit_abort_unblocks_writer():
    conduit = BodyConduit(max_buffer=2)
    errors = []

    def produce():
        try:
            conduit.write(b"too much data")
        except EncodingError as e:
            errors.append(e)

    t = threading.Thread(target=produce)
    t.start()
    t.join(0.1)
    conduit.abort()
    t.join(5)
    assert not t.is_alive()
    assert errors and errors[0].code == "CONDUIT_ABORTED"
