"""
davgate.server
~~~~~~~~~~~~~~
Non-blocking HTTP front end hosting a WSGI application.  Connections are
accepted on the event loop; each request runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import functools
import io
import posixpath
import ssl
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import unquote_to_bytes

from .config import Config
from .logger import GateLogger
from .tls import server_ssl_context

CRLF = b"\r\n"
MAX_HEAD = 65_536
LINGER = 2.0  # seconds spent discarding an unread body before closing
SERVER_SOFTWARE = "davgate"


def run_server(config: Config, app, logger: GateLogger) -> None:
    server = DavServer(config, app, logger)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        print("\n▸ Server shut down.")
    finally:
        server.pool.shutdown(wait=False)


class HTTPError(Exception):
    def __init__(self, status: int, msg: str):
        self.status = status
        self.msg = msg
        super().__init__(f"{status} {msg}")


class DavServer:
    def __init__(self, cfg: Config, app, logger: GateLogger) -> None:
        self.cfg = cfg
        self.app = app
        self.logger = logger
        self.pool = ThreadPoolExecutor(max_workers=cfg.workers, thread_name_prefix="davgate")

    async def start(self) -> asyncio.Server:
        ssl_ctx = server_ssl_context(self.cfg.tls_cert, self.cfg.tls_key) if self.cfg.use_tls else None
        server = await asyncio.start_server(
            self._handle_client,
            host=self.cfg.listen_host,
            port=self.cfg.listen_port,
            ssl=ssl_ctx,
        )
        bind_str = ", ".join(str(s.getsockname()) for s in server.sockets)
        self.logger.listening(bind_str, self.cfg.use_tls)
        return server

    async def serve_forever(self) -> None:
        server = await self.start()
        async with server:
            await server.serve_forever()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        peer = writer.get_extra_info("peername") or ("-", 0)
        loop = asyncio.get_running_loop()
        method, target = "-", "-"
        headers: Dict[str, str] = {}
        body = None

        try:
            req_line, headers = await _read_request_head(reader)
            method, target, version = _parse_request_line(req_line)
            body, length = await _request_body(reader, writer, version, headers, self.cfg.max_body)
            environ = _build_environ(
                method, target, version, headers, body, length,
                server=writer.get_extra_info("sockname") or (self.cfg.listen_host, self.cfg.listen_port),
                peer=peer,
                scheme="https" if self.cfg.use_tls else "http",
            )

            try:
                status, resp_headers, chunks = await loop.run_in_executor(
                    self.pool, _call_app, self.app, environ
                )
            except ConnectionError:
                raise
            except Exception:
                self.logger.failure(method, target)
                raise HTTPError(500, "Internal Server Error") from None

            writer.write(_response_head(status, resp_headers))
            await writer.drain()
            try:
                while True:
                    chunk = await loop.run_in_executor(self.pool, next, chunks, None)
                    if chunk is None:
                        break
                    if chunk:
                        writer.write(chunk)
                        await writer.drain()
            finally:
                await loop.run_in_executor(self.pool, _close, chunks)

        except HTTPError as e:
            try:
                await _send_simple_response(writer, e.status, e.msg.encode())
            except ConnectionError:
                pass
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        except Exception:
            # headers are already out, all we can do is drop the connection
            self.logger.failure(method, target)
        finally:
            try:
                if _body_unread(body, headers):
                    await _linger(reader, writer)
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, ssl.SSLError):
                pass


# ------------------------------------------------------------------ #
# request parsing
# ------------------------------------------------------------------ #


async def _read_request_head(reader: asyncio.StreamReader) -> Tuple[bytes, Dict[str, str]]:
    head = b""
    while True:
        line = await reader.readline()
        if not line:
            raise HTTPError(400, "Bad Request: EOF before headers complete")
        head += line
        if len(head) > MAX_HEAD:
            raise HTTPError(431, "Request Header Fields Too Large")
        if line == CRLF:
            break

    lines = head.split(CRLF)[:-2]
    if not lines:
        raise HTTPError(400, "Bad Request: empty head")

    req_line = lines[0]
    hdrs: Dict[str, str] = {}
    for raw in lines[1:]:
        if b":" in raw:
            k, v = raw.split(b":", 1)
            key = k.decode("latin-1").strip().lower()
            value = v.decode("latin-1").strip()
            hdrs[key] = f"{hdrs[key]}, {value}" if key in hdrs else value
    return req_line, hdrs


def _parse_request_line(line: bytes) -> Tuple[str, str, str]:
    parts = line.decode("latin-1").strip().split()
    if len(parts) != 3:
        raise HTTPError(400, "Bad Request: malformed request-line")
    return parts[0], parts[1], parts[2]


async def _request_body(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    version: str,
    headers: Dict[str, str],
    max_body: int,
) -> Tuple[object, int]:
    """Return ``(wsgi.input, length)`` for the request.

    A ``Content-Length`` body stays on the socket until the application reads
    it, so a request the gate rejects never has its body transferred.  Chunked
    bodies are decoded up front since the length has to be known.
    """
    interim = None
    if version == "HTTP/1.1" and headers.get("expect", "").lower() == "100-continue":
        interim = functools.partial(_send_continue, writer)

    if "chunked" in headers.get("transfer-encoding", "").lower():
        if interim is not None:
            await interim()
        body = await _read_chunked(reader, max_body)
        return io.BytesIO(body), len(body)

    n = _content_length(headers)
    if n > max_body:
        raise HTTPError(413, "Payload Too Large")
    return BodyReader(reader, asyncio.get_running_loop(), n, interim), n


def _content_length(headers: Dict[str, str]) -> int:
    length = headers.get("content-length")
    if not length:
        return 0
    try:
        n = int(length)
    except ValueError:
        raise HTTPError(400, "Bad Request: invalid Content-Length") from None
    if n < 0:
        raise HTTPError(400, "Bad Request: invalid Content-Length")
    return n


async def _read_chunked(reader: asyncio.StreamReader, limit: int) -> bytes:
    body = bytearray()
    while True:
        size_line = await reader.readline()
        try:
            size = int(size_line.split(b";", 1)[0].strip(), 16)
        except ValueError:
            raise HTTPError(400, "Bad Request: malformed chunk size") from None
        if size == 0:
            # trailers
            while True:
                line = await reader.readline()
                if line in (CRLF, b"\n", b""):
                    return bytes(body)
        if len(body) + size > limit:
            raise HTTPError(413, "Payload Too Large")
        try:
            body.extend(await reader.readexactly(size))
            await reader.readexactly(2)
        except asyncio.IncompleteReadError:
            raise HTTPError(400, "Bad Request: truncated chunk") from None


async def _send_continue(writer: asyncio.StreamWriter) -> None:
    writer.write(b"HTTP/1.1 100 Continue\r\n\r\n")
    await writer.drain()


class BodyReader:
    """``wsgi.input`` for a worker thread, pulling at most *length* bytes
    from the connection's stream on the event loop as they are asked for."""

    def __init__(self, reader: asyncio.StreamReader, loop: asyncio.AbstractEventLoop,
                 length: int, on_first_read: Optional[Callable[[], Awaitable[None]]] = None):
        self._reader = reader
        self._loop = loop
        self._on_first_read = on_first_read
        self.remaining = length

    def _wait(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result()

    def read(self, size: Optional[int] = -1) -> bytes:
        if size is None or size < 0 or size > self.remaining:
            size = self.remaining
        if size == 0:
            return b""
        if self._on_first_read is not None:
            send, self._on_first_read = self._on_first_read, None
            self._wait(send())
        try:
            data = self._wait(self._reader.readexactly(size))
        except asyncio.IncompleteReadError:
            self.remaining = 0
            raise ConnectionError("client closed the connection mid-body") from None
        self.remaining -= len(data)
        return data

    def readline(self, size: Optional[int] = -1) -> bytes:
        limit = self.remaining if size is None or size < 0 else min(size, self.remaining)
        line = bytearray()
        while len(line) < limit:
            ch = self.read(1)
            line += ch
            if ch == b"\n":
                break
        return bytes(line)

    def readlines(self, hint: int = -1) -> List[bytes]:
        return list(iter(self.readline, b""))

    def __iter__(self) -> Iterator[bytes]:
        return iter(self.readline, b"")


def _body_unread(body, headers: Dict[str, str]) -> bool:
    if isinstance(body, BodyReader):
        return body.remaining > 0
    if body is None:
        return "content-length" in headers or "transfer-encoding" in headers
    return False


async def _linger(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """Half-close, then discard input until the client hangs up.

    Closing with unread data queued makes the kernel reset the connection,
    which can drop the response before the client has read it.
    """
    if not writer.can_write_eof():
        return

    async def discard() -> None:
        while await reader.read(65_536):
            pass

    try:
        writer.write_eof()
        await asyncio.wait_for(discard(), LINGER)
    except (asyncio.TimeoutError, ConnectionError):
        pass


def _canonical_path(path: str) -> str:
    """Collapse ``.``/``..`` segments and repeated slashes, keeping a trailing
    slash, so access rules see the same path the filesystem provider opens."""
    canon = posixpath.normpath("/" + path)
    if canon.startswith("//"):
        canon = "/" + canon.lstrip("/")
    if path.endswith("/") and canon != "/":
        canon += "/"
    return canon


def _build_environ(
    method: str,
    target: str,
    version: str,
    headers: Dict[str, str],
    body,
    content_length: int,
    server: Tuple,
    peer: Tuple,
    scheme: str,
) -> Dict[str, object]:
    path, _, query = target.partition("?")
    if path.startswith(("http://", "https://")):
        path = "/" + path.split("/", 3)[3] if path.count("/") >= 3 else "/"

    environ: Dict[str, object] = {
        "REQUEST_METHOD": method,
        "SCRIPT_NAME": "",
        "PATH_INFO": _canonical_path(unquote_to_bytes(path).decode("latin-1")),
        "QUERY_STRING": query,
        "SERVER_NAME": str(server[0]),
        "SERVER_PORT": str(server[1]),
        "SERVER_PROTOCOL": version,
        "SERVER_SOFTWARE": SERVER_SOFTWARE,
        "REMOTE_ADDR": str(peer[0]),
        "REMOTE_PORT": str(peer[1]),
        "CONTENT_LENGTH": str(content_length),
        "wsgi.version": (1, 0),
        "wsgi.url_scheme": scheme,
        "wsgi.input": body,
        "wsgi.errors": sys.stderr,
        "wsgi.multithread": True,
        "wsgi.multiprocess": False,
        "wsgi.run_once": False,
    }
    for k, v in headers.items():
        if k == "content-type":
            environ["CONTENT_TYPE"] = v
        elif k in ("content-length", "transfer-encoding", "expect"):
            continue
        else:
            environ["HTTP_" + k.upper().replace("-", "_")] = v
    return environ


# ------------------------------------------------------------------ #
# response
# ------------------------------------------------------------------ #


def _call_app(app, environ) -> Tuple[str, List[Tuple[str, str]], Iterator[bytes]]:
    """Run *app* up to its first body chunk so status and headers are known."""
    state: Dict[str, object] = {}
    written: List[bytes] = []

    def start_response(status, headers, exc_info=None):
        if exc_info and state.get("sent"):
            raise exc_info[1].with_traceback(exc_info[2])
        state["status"] = status
        state["headers"] = list(headers)
        return written.append

    result = app(environ, start_response)
    chunks = iter(result)
    first = next(chunks, b"")
    if "status" not in state:
        _close(result)
        raise RuntimeError("application did not call start_response")
    state["sent"] = True

    def body() -> Iterator[bytes]:
        try:
            yield from written
            yield first
            yield from chunks
        finally:
            _close(result)

    return state["status"], state["headers"], body()  # type: ignore[return-value]


def _close(obj) -> None:
    close = getattr(obj, "close", None)
    if close is not None:
        close()


def _response_head(status: str, headers: List[Tuple[str, str]]) -> bytes:
    head = [f"HTTP/1.1 {status}"]
    for k, v in headers:
        if k.lower() != "connection":
            head.append(f"{k}: {v}")
    head.append("Connection: close")
    return ("\r\n".join(head) + "\r\n\r\n").encode("latin-1")


async def _send_simple_response(writer: asyncio.StreamWriter, status: int, body: bytes = b"") -> None:
    reason = {400: "Bad Request", 413: "Payload Too Large",
              431: "Request Header Fields Too Large", 500: "Internal Server Error"}.get(status, "Error")
    head = f"HTTP/1.1 {status} {reason}\r\n"
    head += f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n"
    writer.write(head.encode() + body)
    await writer.drain()
