import json
import logging
import threading

import httpx

from avs_core.client import AvsClient
from avs_core.domain.exceptions import ProtocolError, ServerException, StreamError, TransportError
from avs_core.transport.downchannel import DirectiveStream


class SettingsStub:
    endpoint_url = "https://avs.example.com/v20160207"
    directives_path = "/directives"
    events_path = "/events"
    ping_path = "/ping"
    http_timeout = 1.0
    downchannel_read_timeout = None
    user_agent = "avs-core-test"
    request_id_header = "x-amzn-requestid"
    conduit_buffer_size = 1024
    audio_chunk_size = 100


HEADERS = {"content-type": "multipart/related; boundary=b"}


def part(directive) -> bytes:
    body = json.dumps({"directive": directive}).encode()
    return b"--b\r\nContent-Type: application/json\r\n\r\n" + body + b"\r\n"


def make_client(handler) -> AvsClient:
    transport = httpx.MockTransport(handler)
    return AvsClient(SettingsStub(), client_factory=lambda: httpx.Client(transport=transport))


def test_downchannel_delivers_directives_in_order():
    seen = []

    def handler(request):
        seen.append(request)
        body = part({"id": "1"}) + part({"id": "2"}) + part({"id": "3"}) + b"--b--\r\n"
        return httpx.Response(200, headers=HEADERS, content=body)

    stream = make_client(handler).open_downchannel("tok")
    assert [d["id"] for d in stream] == ["1", "2", "3"]
    assert stream.join(2)
    assert stream.closed
    assert stream.error is None
    assert stream.received == 3
    assert seen[0].method == "GET"
    assert str(seen[0].url) == "https://avs.example.com/v20160207/directives"
    assert seen[0].headers["authorization"] == "Bearer tok"
    assert seen[0].headers["user-agent"] == "avs-core-test"


def test_downchannel_malformed_part_terminates_silently():
    def handler(request):
        truncated = b'--b\r\nContent-Type: application/json\r\n\r\n{"directive": {"id"\r\n'
        body = part({"id": "1"}) + truncated + part({"id": "3"}) + b"--b--\r\n"
        return httpx.Response(200, headers=HEADERS, content=body)

    stream = make_client(handler).open_downchannel("tok")
    assert list(stream) == [{"id": "1"}]
    assert stream.join(2)
    assert isinstance(stream.error, ProtocolError)
    assert list(stream) == []


def test_downchannel_missing_directive_terminates():
    def handler(request):
        body = part({"id": "1"}) + b"--b\r\nContent-Type: application/json\r\n\r\n{}\r\n" + b"--b--\r\n"
        return httpx.Response(200, headers=HEADERS, content=body)

    stream = make_client(handler).open_downchannel("tok")
    assert list(stream) == [{"id": "1"}]
    assert isinstance(stream.error, ProtocolError)


def test_downchannel_failure_status_returns_terminated_stream():
    def handler(request):
        return httpx.Response(403, json={"payload": {"code": "UNAUTHORIZED_REQUEST_EXCEPTION", "message": "no"}})

    stream = make_client(handler).open_downchannel("tok")
    assert stream.closed
    assert list(stream) == []
    assert isinstance(stream.error, ServerException)
    assert stream.error.code == "UNAUTHORIZED_REQUEST_EXCEPTION"


def test_downchannel_no_content_returns_empty_stream():
    stream = make_client(lambda request: httpx.Response(204)).open_downchannel("tok")
    assert list(stream) == []
    assert stream.error is None


def test_downchannel_connect_error_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    try:
        make_client(handler).open_downchannel("tok")
    except TransportError as e:
        assert e.code == "NETWORK_ERROR"
    else:
        raise AssertionError("expected TransportError")


def test_downchannel_read_error_terminates_silently():
    def body():
        yield part({"id": "1"}) + b"--b"
        raise httpx.ReadError("connection reset")

    stream = make_client(lambda request: httpx.Response(200, headers=HEADERS, content=body())).open_downchannel("tok")
    assert list(stream) == [{"id": "1"}]
    assert stream.join(2)
    assert isinstance(stream.error, StreamError)
    assert stream.received == 1


def test_downchannel_socket_error_is_logged_with_traceback(caplog):
    def body():
        yield part({"id": "1"}) + b"--b"
        raise OSError("socket closed")

    with caplog.at_level(logging.WARNING, logger="avs_core"):
        stream = make_client(lambda request: httpx.Response(200, headers=HEADERS, content=body())).open_downchannel(
            "tok"
        )
        assert list(stream) == [{"id": "1"}]
        assert stream.join(2)

    assert isinstance(stream.error, TransportError)
    assert not isinstance(stream.error, StreamError)
    assert stream.error.code == "NETWORK_ERROR"
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert warnings and warnings[-1].exc_info is not None
    assert isinstance(warnings[-1].exc_info[1], OSError)


def test_downchannel_close_stops_delivery():
    release = threading.Event()
    closed_clients = []
    responses = []

    class RecordingClient(httpx.Client):
        def close(self):
            closed_clients.append(self)
            super().close()

    def body():
        yield part({"id": "1"}) + b"--b"
        release.wait(5)
        yield b"\r\nContent-Type: application/json\r\n\r\n" + json.dumps({"directive": {"id": "2"}}).encode()
        yield b"\r\n--b--\r\n"

    def handler(request):
        resp = httpx.Response(200, headers=HEADERS, content=body())
        responses.append(resp)
        return resp

    transport = httpx.MockTransport(handler)
    client = AvsClient(SettingsStub(), client_factory=lambda: RecordingClient(transport=transport))
    stream = client.open_downchannel("tok")
    assert stream.get(timeout=5) == {"id": "1"}
    stream.close()
    release.set()
    assert stream.get() is None
    assert list(stream) == []
    assert stream.join(5)
    assert stream.received == 1
    assert stream.error is None
    assert len(closed_clients) == 1
    assert responses[0].is_closed


def test_terminated_stream_context_manager():
    with DirectiveStream.terminated() as stream:
        assert stream.get() is None
    assert stream.closed
