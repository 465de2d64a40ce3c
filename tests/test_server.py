"""The asyncio listener hosting the WSGI application."""

from __future__ import annotations

import asyncio
import io

import pytest

from conftest import basic
from davgate.config import MAX_BODY, Config
from davgate.logger import GateLogger
from davgate.server import (
    BodyReader,
    DavServer,
    HTTPError,
    _build_environ,
    _call_app,
    _canonical_path,
    _read_request_head,
)


def _config(**kw) -> Config:
    base = dict(
        listen_host="127.0.0.1", listen_port=0, use_tls=False, tls_cert="", tls_key="",
        auth_enabled=True, scope=".", modify=True, config_file="", log_path="",
        log_level="INFO", workers=4, max_body=MAX_BODY,
    )
    base.update(kw)
    return Config(**base)


def echo_app(environ, start_response):
    body = environ["wsgi.input"].read()
    out = f"{environ['REQUEST_METHOD']} {environ['PATH_INFO']} {environ['QUERY_STRING']} ".encode() + body
    start_response("200 OK", [("Content-Type", "text/plain"), ("Content-Length", str(len(out)))])
    return [out]


def broken_app(environ, start_response):
    raise RuntimeError("boom")


async def _exchange(app, raw: bytes, **cfg) -> bytes:
    davserver = DavServer(_config(**cfg), app, GateLogger())
    server = await davserver.start()
    port = server.sockets[0].getsockname()[1]
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(raw)
        await writer.drain()
        data = await reader.read()
        writer.close()
        return data
    finally:
        server.close()
        await server.wait_closed()
        davserver.pool.shutdown()


def exchange(app, raw: bytes, **cfg) -> bytes:
    return asyncio.run(_exchange(app, raw, **cfg))


def _reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class TestRoundTrip:
    def test_put_with_content_length(self) -> None:
        data = exchange(
            echo_app,
            b"PUT /a%20b.txt?x=1 HTTP/1.1\r\nHost: h\r\nContent-Length: 5\r\n\r\nhello",
        )
        assert data.startswith(b"HTTP/1.1 200 OK\r\n")
        assert b"Connection: close" in data
        assert data.endswith(b"PUT /a b.txt x=1 hello")

    def test_chunked_body(self) -> None:
        data = exchange(
            echo_app,
            b"PUT /f HTTP/1.1\r\nHost: h\r\nTransfer-Encoding: chunked\r\n\r\n"
            b"3\r\nabc\r\n2\r\nde\r\n0\r\n\r\n",
        )
        assert data.endswith(b"PUT /f  abcde")

    def test_malformed_request_line(self) -> None:
        data = exchange(echo_app, b"NONSENSE\r\n\r\n")
        assert data.startswith(b"HTTP/1.1 400 Bad Request")

    def test_application_error_is_500(self) -> None:
        data = exchange(broken_app, b"GET / HTTP/1.1\r\nHost: h\r\n\r\n")
        assert data.startswith(b"HTTP/1.1 500 Internal Server Error")

    def test_gate_behind_listener(self, make_gate, bob) -> None:
        gate = make_gate([bob])
        data = exchange(gate, b"GET /public HTTP/1.1\r\nHost: h\r\n\r\n")
        assert data.startswith(b"HTTP/1.1 401 Unauthorized")
        assert b'WWW-Authenticate: Basic realm="Restricted"' in data

        auth = basic("bob", "s3cret").encode()
        data = exchange(gate, b"GET /public HTTP/1.1\r\nHost: h\r\nAuthorization: " + auth + b"\r\n\r\n")
        assert data.startswith(b"HTTP/1.1 200 OK")
        assert data.endswith(b"bob GET")


class TestParsing:
    def test_request_head(self) -> None:
        async def run():
            return await _read_request_head(
                _reader(b"GET / HTTP/1.1\r\nHost: h\r\nX-A: 1\r\nx-a: 2\r\n\r\nrest")
            )

        line, headers = asyncio.run(run())
        assert line == b"GET / HTTP/1.1"
        assert headers == {"host": "h", "x-a": "1, 2"}

    def test_truncated_head(self) -> None:
        async def run():
            return await _read_request_head(_reader(b"GET / HTTP/1.1\r\nHost: h\r\n"))

        with pytest.raises(HTTPError) as exc:
            asyncio.run(run())
        assert exc.value.status == 400

    def test_environ(self) -> None:
        env = _build_environ(
            "PROPFIND",
            "http://host:8080/caf%C3%A9/?depth=1",
            "HTTP/1.1",
            {"depth": "1", "content-type": "text/xml", "content-length": "0", "authorization": "x",
             "expect": "100-continue"},
            io.BytesIO(b""),
            0,
            server=("127.0.0.1", 8080),
            peer=("10.0.0.1", 5555),
            scheme="http",
        )
        assert env["PATH_INFO"] == "/caf\xc3\xa9/"
        assert env["QUERY_STRING"] == "depth=1"
        assert env["HTTP_DEPTH"] == "1"
        assert env["HTTP_AUTHORIZATION"] == "x"
        assert env["CONTENT_TYPE"] == "text/xml"
        assert env["CONTENT_LENGTH"] == "0"
        assert "HTTP_CONTENT_LENGTH" not in env
        assert "HTTP_EXPECT" not in env
        assert env["REMOTE_ADDR"] == "10.0.0.1"


def test_call_app_requires_start_response() -> None:
    def lazy_app(environ, start_response):
        return [b"x"]

    with pytest.raises(RuntimeError):
        _call_app(lazy_app, {})


def test_call_app_streams_generator() -> None:
    def gen_app(environ, start_response):
        start_response("200 OK", [])
        yield b"a"
        yield b"b"

    status, headers, body = _call_app(gen_app, {})
    assert status == "200 OK"
    assert b"".join(body) == b"ab"


class TestPathCanonicalization:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("/docs/../private/s.txt", "/private/s.txt"),
            ("//private/s.txt", "/private/s.txt"),
            ("/a/./b//c/", "/a/b/c/"),
            ("/../../etc", "/etc"),
            ("/", "/"),
            ("", "/"),
        ],
    )
    def test_canonical_path(self, raw, expected) -> None:
        assert _canonical_path(raw) == expected

    @pytest.mark.parametrize(
        "target",
        ["/docs/../private/s.txt", "//private/s.txt", "/docs/%2e%2e/private/s.txt"],
    )
    def test_dot_segments_cannot_dodge_deny_rule(self, make_gate, bob, engines, target) -> None:
        gate = make_gate([bob])
        auth = basic("bob", "s3cret").encode()
        data = exchange(
            gate,
            b"GET " + target.encode() + b" HTTP/1.1\r\nHost: h\r\nAuthorization: " + auth + b"\r\n\r\n",
        )
        assert data.startswith(b"HTTP/1.1 403 Forbidden")
        assert "bob" not in engines

    def test_engine_sees_canonical_path(self, make_gate, bob, engines) -> None:
        gate = make_gate([bob])
        auth = basic("bob", "s3cret").encode()
        data = exchange(
            gate,
            b"GET /docs/./x/../public.txt HTTP/1.1\r\nHost: h\r\nAuthorization: " + auth + b"\r\n\r\n",
        )
        assert data.startswith(b"HTTP/1.1 200 OK")
        assert engines["bob"].calls[-1]["path"] == "/docs/public.txt"


class TestRequestBody:
    def test_content_length_over_limit_is_413(self) -> None:
        data = exchange(
            echo_app,
            b"PUT /f HTTP/1.1\r\nHost: h\r\nContent-Length: 5\r\n\r\nhello",
            max_body=4,
        )
        assert data.startswith(b"HTTP/1.1 413 Payload Too Large")

    def test_chunked_over_limit_is_413(self) -> None:
        data = exchange(
            echo_app,
            b"PUT /f HTTP/1.1\r\nHost: h\r\nTransfer-Encoding: chunked\r\n\r\n"
            b"3\r\nabc\r\n2\r\nde\r\n0\r\n\r\n",
            max_body=4,
        )
        assert data.startswith(b"HTTP/1.1 413 Payload Too Large")

    def test_rejected_request_answers_before_body(self, make_gate, bob) -> None:
        """Only a sliver of the declared body arrives; the 401 does not wait for the rest."""
        gate = make_gate([bob])
        data = exchange(
            gate,
            b"PUT /x HTTP/1.1\r\nHost: h\r\nContent-Length: 500000000\r\n\r\n" + b"x" * 65_536,
        )
        assert data.startswith(b"HTTP/1.1 401 Unauthorized")

    def test_expect_continue(self) -> None:
        data = exchange(
            echo_app,
            b"PUT /f HTTP/1.1\r\nHost: h\r\nExpect: 100-continue\r\nContent-Length: 5\r\n\r\nhello",
        )
        assert data.startswith(b"HTTP/1.1 100 Continue\r\n\r\nHTTP/1.1 200 OK\r\n")
        assert data.endswith(b"PUT /f  hello")

    def test_expect_continue_chunked(self) -> None:
        data = exchange(
            echo_app,
            b"PUT /f HTTP/1.1\r\nHost: h\r\nExpect: 100-continue\r\nTransfer-Encoding: chunked\r\n\r\n"
            b"3\r\nabc\r\n0\r\n\r\n",
        )
        assert data.startswith(b"HTTP/1.1 100 Continue\r\n\r\nHTTP/1.1 200 OK\r\n")

    def test_no_continue_when_rejected(self, make_gate, bob) -> None:
        gate = make_gate([bob])
        data = exchange(
            gate,
            b"PUT /f HTTP/1.1\r\nHost: h\r\nExpect: 100-continue\r\nContent-Length: 5\r\n\r\n",
        )
        assert data.startswith(b"HTTP/1.1 401 Unauthorized")
        assert b"100 Continue" not in data


class TestBodyReader:
    def test_reads_on_demand(self) -> None:
        async def run():
            loop = asyncio.get_running_loop()
            sent = []

            async def on_first_read():
                sent.append(True)

            body = BodyReader(_reader(b"hello world"), loop, 5, on_first_read)
            assert sent == []
            first = await loop.run_in_executor(None, body.read, 2)
            rest = await loop.run_in_executor(None, body.read)
            after = await loop.run_in_executor(None, body.read)
            return sent, first, rest, after

        sent, first, rest, after = asyncio.run(run())
        assert sent == [True]
        assert (first, rest, after) == (b"he", b"llo", b"")

    def test_lines_stop_at_length(self) -> None:
        async def run():
            loop = asyncio.get_running_loop()
            body = BodyReader(_reader(b"a\nb\nc"), loop, 4)
            return await loop.run_in_executor(None, list, body)

        assert asyncio.run(run()) == [b"a\n", b"b\n"]

    def test_truncated_body(self) -> None:
        async def run():
            loop = asyncio.get_running_loop()
            body = BodyReader(_reader(b"abc"), loop, 10)
            await loop.run_in_executor(None, body.read)

        with pytest.raises(ConnectionError):
            asyncio.run(run())
