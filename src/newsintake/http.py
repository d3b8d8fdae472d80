from __future__ import annotations

import socket
import time
from dataclasses import dataclass
from http.client import HTTPException
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import ErrorKind, IngestError

_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class HttpResponse:
    status: int
    content: bytes
    headers: dict[str, str]
    url: str


def http_get(
    url: str,
    *,
    headers: dict[str, str] | None = None,
    timeout: float = 15.0,
    max_bytes: int | None = None,
) -> HttpResponse:
    """GET ``url`` with a per-socket ``timeout`` and a total read deadline.

    Non-2xx answers are returned as responses. Failures that never got a
    complete answer raise ``IngestError`` with kind ``transient``; a URL that
    urllib cannot request at all raises kind ``config``.
    """
    try:
        request = Request(url, headers=headers or {})
    except ValueError as exc:
        raise IngestError(f"invalid url: {exc}", ErrorKind.CONFIG) from exc
    deadline = time.monotonic() + timeout
    try:
        with urlopen(request, timeout=timeout) as response:
            status = response.getcode()
            content = _read_with_deadline(response, deadline, max_bytes)
            return HttpResponse(
                status=status,
                content=content,
                headers={k.lower(): v for k, v in response.headers.items()},
                url=response.geturl(),
            )
    except HTTPError as exc:
        try:
            body = exc.read()
        except OSError:
            body = b""
        return HttpResponse(
            status=exc.code,
            content=body or b"",
            headers={k.lower(): v for k, v in (exc.headers or {}).items()},
            url=url,
        )
    except URLError as exc:
        raise IngestError(f"request failed: {exc.reason}", ErrorKind.TRANSIENT) from exc
    except (TimeoutError, socket.timeout) as exc:
        raise IngestError(f"request timed out after {timeout}s", ErrorKind.TRANSIENT) from exc
    except ConnectionError as exc:
        raise IngestError(f"connection error: {exc}", ErrorKind.TRANSIENT) from exc
    except HTTPException as exc:
        raise IngestError(
            f"incomplete response: {exc.__class__.__name__}", ErrorKind.TRANSIENT
        ) from exc


def _read_with_deadline(response, deadline: float, max_bytes: int | None) -> bytes:
    chunks: list[bytes] = []
    total = 0
    while True:
        if time.monotonic() > deadline:
            raise IngestError("read deadline exceeded", ErrorKind.TRANSIENT)
        chunk = response.read(_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if max_bytes is not None and total > max_bytes:
            raise IngestError(
                f"response larger than {max_bytes} bytes", ErrorKind.HTTP
            )
        chunks.append(chunk)
    return b"".join(chunks)
