"""
HTTP/1.1 message framing.

Minimal request/response head parsing and body framing for a forwarding
proxy. Header names keep their wire casing; bodies of relayed responses
are passed through in their original framing (chunked stays chunked).

Body framing (RFC 9112 section 6):
- HEAD responses, 1xx, 204, 304 and 2xx answers to CONNECT have no body
- Transfer-Encoding ending in chunked: chunked
- Content-Length: exactly that many bytes
- Otherwise a response body runs until the connection closes
"""

from __future__ import annotations

import asyncio
from http import HTTPStatus
from typing import AsyncIterator, Optional, Protocol, Tuple

import attrs

from ntlmproxy.core.exceptions import MalformedRequestError, ProtocolError, RequestBodyTooLarge
from ntlmproxy.core.types import Headers, InboundRequest

CRLF = b"\r\n"
MAX_HEAD_SIZE = 64 * 1024
MAX_HEADER_COUNT = 200
CHUNK_SIZE = 65536
ENCODING = "latin-1"

CONNECTION_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"


class LineReader(Protocol):
    async def readline(self) -> bytes: ...

    async def readexactly(self, n: int) -> bytes: ...

    async def read(self, n: int = ...) -> bytes: ...


@attrs.define(frozen=True, slots=True)
class ResponseHead:
    version: str
    status: int
    reason: str
    headers: Headers = attrs.field(eq=False)


def reason_phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return ""


# =============================================================================
# HEAD PARSING
# =============================================================================


async def _read_head_lines(reader: LineReader, error: type) -> Optional[list]:
    """Read lines up to the blank line ending a head; None on EOF before any byte."""
    lines = []
    size = 0
    while True:
        try:
            line = await reader.readline()
        except (ValueError, asyncio.LimitOverrunError) as e:
            raise error(f"Header line too long: {e}") from e
        if not line:
            if not lines:
                return None
            raise error("Connection closed inside message head")
        size += len(line)
        if size > MAX_HEAD_SIZE:
            raise error("Message head too large")
        stripped = line.rstrip(b"\r\n")
        if not stripped:
            if not lines:
                # Tolerate stray CRLF between messages
                continue
            return lines
        lines.append(stripped.decode(ENCODING))


def _parse_header_lines(lines: list, error: type) -> Headers:
    if len(lines) > MAX_HEADER_COUNT:
        raise error("Too many header fields")
    headers = Headers()
    for line in lines:
        if line[:1] in (" ", "\t"):
            raise error("Obsolete header line folding is not supported")
        name, sep, value = line.partition(":")
        if not sep or not name or name != name.strip():
            raise error(f"Malformed header line: {line!r}")
        headers.add(name, value.strip())
    return headers


async def read_request_head(reader: LineReader) -> Optional[InboundRequest]:
    """
    Read a request line and headers.

    Returns None if the client closed the connection before sending
    anything. The returned request has an empty body.

    Raises:
        MalformedRequestError: If the head cannot be parsed
    """
    lines = await _read_head_lines(reader, MalformedRequestError)
    if lines is None:
        return None
    parts = lines[0].split(" ")
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise MalformedRequestError(f"Malformed request line: {lines[0]!r}")
    method, target, version = parts
    if not version.startswith("HTTP/1."):
        raise MalformedRequestError(f"Unsupported protocol version: {version!r}")
    headers = _parse_header_lines(lines[1:], MalformedRequestError)
    return InboundRequest(method=method.upper(), target=target, version=version, headers=headers)


async def read_response_head(reader: LineReader) -> ResponseHead:
    """
    Read a status line and headers, skipping interim 1xx responses
    other than 101.

    Raises:
        ProtocolError: If the head is malformed
        ConnectionError: If the connection closed before a head arrived
    """
    while True:
        lines = await _read_head_lines(reader, ProtocolError)
        if lines is None:
            raise ConnectionResetError("Connection closed before response head")
        parts = lines[0].split(" ", 2)
        if len(parts) < 2 or not parts[0].startswith("HTTP/"):
            raise ProtocolError(f"Malformed status line: {lines[0]!r}")
        try:
            status = int(parts[1])
        except ValueError:
            raise ProtocolError(f"Malformed status code: {parts[1]!r}") from None
        reason = parts[2] if len(parts) == 3 else ""
        headers = _parse_header_lines(lines[1:], ProtocolError)
        if 100 <= status < 200 and status != 101:
            continue
        return ResponseHead(version=parts[0], status=status, reason=reason, headers=headers)


# =============================================================================
# SERIALIZATION
# =============================================================================


def _serialize_fields(headers: Headers) -> bytes:
    return b"".join(f"{name}: {value}\r\n".encode(ENCODING) for name, value in headers)


def serialize_request_head(method: str, target: str, version: str, headers: Headers) -> bytes:
    return f"{method} {target} {version}\r\n".encode(ENCODING) + _serialize_fields(headers) + CRLF


def serialize_response_head(version: str, status: int, reason: str, headers: Headers) -> bytes:
    status_line = f"{version} {status} {reason}".rstrip() + "\r\n"
    return status_line.encode(ENCODING) + _serialize_fields(headers) + CRLF


def status_line_response(status: int, reason: Optional[str] = None) -> bytes:
    """Bare status line plus blank line, as used for CONNECT answers."""
    return f"HTTP/1.1 {status} {reason or reason_phrase(status)}\r\n\r\n".encode(ENCODING)


def simple_response(
    status: int,
    message: str = "",
    reason: Optional[str] = None,
    headers: Optional[Headers] = None,
) -> bytes:
    """Complete text/plain response that closes the connection."""
    body = message.encode("utf-8")
    fields = headers.copy() if headers is not None else Headers()
    fields.replace("Content-Type", "text/plain; charset=utf-8")
    fields.replace("Content-Length", str(len(body)))
    fields.replace("Connection", "close")
    head = serialize_response_head("HTTP/1.1", status, reason or reason_phrase(status), fields)
    return head + body


# =============================================================================
# BODY FRAMING
# =============================================================================


def is_chunked(headers: Headers) -> bool:
    codings = [
        part.strip().lower()
        for value in headers.get_all("Transfer-Encoding")
        for part in value.split(",")
        if part.strip()
    ]
    return bool(codings) and codings[-1] == "chunked"


def content_length(headers: Headers, error: type = ProtocolError) -> Optional[int]:
    values = {
        value.strip() for raw in headers.get_all("Content-Length") for value in raw.split(",")
    }
    if not values:
        return None
    if len(values) > 1:
        raise error("Conflicting Content-Length values")
    value = values.pop()
    if not value.isdigit():
        raise error(f"Invalid Content-Length: {value!r}")
    return int(value)


def response_has_body(request_method: str, status: int) -> bool:
    if request_method == "HEAD":
        return False
    if 100 <= status < 200 or status in (204, 304):
        return False
    if request_method == "CONNECT" and 200 <= status < 300:
        return False
    return True


async def _with_idle(awaitable, idle: Optional[float]):
    if idle is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=idle)


async def _read_chunk_size(
    reader: LineReader, idle: Optional[float], error: type
) -> Tuple[int, bytes]:
    line = await _with_idle(reader.readline(), idle)
    if not line.endswith(b"\n"):
        raise error("Connection closed inside chunked body")
    size_field = line.split(b";", 1)[0].strip()
    try:
        return int(size_field, 16), line
    except ValueError:
        raise error(f"Invalid chunk size: {size_field!r}") from None


async def read_request_body(
    reader: LineReader,
    headers: Headers,
    limit: int,
    idle: Optional[float] = None,
) -> bytes:
    """
    Read and decode a complete request body for buffering.

    Raises:
        RequestBodyTooLarge: If the body exceeds limit bytes
        MalformedRequestError: On invalid framing or premature EOF
    """
    try:
        if is_chunked(headers):
            body = bytearray()
            while True:
                size, _ = await _read_chunk_size(reader, idle, MalformedRequestError)
                if size == 0:
                    while (await _with_idle(reader.readline(), idle)).strip():
                        pass
                    return bytes(body)
                if len(body) + size > limit:
                    raise RequestBodyTooLarge(limit)
                body += await _with_idle(reader.readexactly(size + 2), idle)
                del body[-2:]
        if "Transfer-Encoding" in headers:
            raise MalformedRequestError("Unsupported request Transfer-Encoding")
        length = content_length(headers, MalformedRequestError) or 0
        if length > limit:
            raise RequestBodyTooLarge(limit)
        return await _with_idle(reader.readexactly(length), idle) if length else b""
    except asyncio.IncompleteReadError as e:
        raise MalformedRequestError("Connection closed inside request body") from e


async def iter_response_body(
    reader: LineReader,
    request_method: str,
    head: ResponseHead,
    idle: Optional[float] = None,
) -> AsyncIterator[bytes]:
    """
    Yield a response body in its wire framing.

    Chunk size lines and trailers are passed through unchanged so the
    receiver sees exactly what the upstream sent.
    """
    if not response_has_body(request_method, head.status):
        return
    if is_chunked(head.headers):
        while True:
            size, line = await _read_chunk_size(reader, idle, ProtocolError)
            yield line
            if size == 0:
                while True:
                    trailer = await _with_idle(reader.readline(), idle)
                    if not trailer:
                        return
                    yield trailer
                    if not trailer.strip():
                        return
            remaining = size + 2
            while remaining:
                data = await _with_idle(reader.read(min(remaining, CHUNK_SIZE)), idle)
                if not data:
                    raise ProtocolError("Connection closed inside chunked body")
                remaining -= len(data)
                yield data
        return
    length = content_length(head.headers)
    if length is not None:
        remaining = length
        while remaining:
            data = await _with_idle(reader.read(min(remaining, CHUNK_SIZE)), idle)
            if not data:
                raise ProtocolError("Connection closed inside response body")
            remaining -= len(data)
            yield data
        return
    while True:
        data = await _with_idle(reader.read(CHUNK_SIZE), idle)
        if not data:
            return
        yield data


def response_is_delimited(request_method: str, head: ResponseHead) -> bool:
    """False if the response body only ends when the connection closes."""
    if not response_has_body(request_method, head.status):
        return True
    return is_chunked(head.headers) or content_length(head.headers) is not None
