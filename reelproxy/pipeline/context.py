"""
ReelProxy — Request Context
============================

What:  The request/response types every pipeline stage works on, plus the
       upstream URL resolution shared by the path validator, the cache and
       the upstream fetcher.
How:   ProxyRequest is built once per inbound request (from_starlette) and
       is never re-parsed by later stages; ProxyResponse is a plain
       status/body/headers triple turned into a Starlette Response by the
       route.

URL resolution:
    path="/movie/550", api_url="https://api.themoviedb.org/3"
        → https://api.themoviedb.org/3/movie/550
    path="https://api.themoviedb.org/3/movie/550"
        → used as-is (the path validator checks its host)
    Every other inbound query parameter is appended to the upstream query:
    /api?path=/search/movie&query=alien&page=2
        → https://api.themoviedb.org/3/search/movie?query=alien&page=2
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
from starlette.datastructures import Headers
from starlette.requests import Request

from reelproxy.exceptions import ReelProxyError

# Methods whose body is validated and forwarded upstream
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

_DEFAULT_PORTS = {"http": 80, "https": 443}


def resolve_upstream_url(
    path: Optional[str],
    api_url: str,
    params: Iterable[Tuple[str, str]] = (),
) -> Optional[str]:
    """
    Resolve the client-supplied `path` against the upstream base URL.

    Returns None when no usable path was given. The result is NOT checked
    against the upstream host; see is_allowed_upstream_url().
    """
    if path is None or not path.strip():
        return None
    path = path.strip()

    if urlsplit(path).scheme:
        url = path
    elif path.startswith("//"):
        # Scheme-relative: inherits the upstream scheme
        url = f"{urlsplit(api_url).scheme}:{path}"
    else:
        url = f"{api_url.rstrip('/')}/{path.lstrip('/')}"

    parts = urlsplit(url)
    query = parts.query
    extra = urlencode(list(params))
    if extra:
        query = f"{query}&{extra}" if query else extra
    # Fragments never reach the server
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, ""))


def _effective_port(scheme: str, port: Optional[int]) -> Optional[int]:
    return port if port is not None else _DEFAULT_PORTS.get(scheme)


def is_allowed_upstream_url(url: Optional[str], api_url: str) -> bool:
    """
    Anti-SSRF check: True only for http(s) URLs on the upstream's host and port.

    Host comparison is case-insensitive. Malformed URLs (bad port, no host,
    characters httpx refuses to send) are rejected rather than raised.
    """
    if not url:
        return False
    try:
        target = urlsplit(url)
        base = urlsplit(api_url)
        target_port = _effective_port(target.scheme.lower(), target.port)
        base_port = _effective_port(base.scheme.lower(), base.port)
        httpx.URL(url)
    except (ValueError, httpx.InvalidURL):
        return False

    if target.scheme.lower() not in _DEFAULT_PORTS or not target.hostname:
        return False
    return target.hostname == base.hostname and target_port == base_port


def client_ip_from(headers: Headers, peer: Optional[str]) -> str:
    """First X-Forwarded-For hop when present, else the socket peer address."""
    forwarded = headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    return first or peer or "unknown"


@dataclass
class ProxyRequest:
    """
    One inbound request as seen by the pipeline.

    Attributes:
        method:       Upper-case HTTP verb
        path:         Raw `path` query parameter (None when absent)
        upstream_url: `path` resolved against the upstream base (None when absent)
        headers:      Inbound headers, case-insensitive
        body:         Body bytes for BODY_METHODS (empty otherwise). Reading
                      stops one byte past max_body_size.
        client_ip:    Address used for rate limiting
        request_id:   Correlation ID from RequestIDMiddleware
    """

    method: str
    path: Optional[str] = None
    upstream_url: Optional[str] = None
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""
    client_ip: str = "unknown"
    request_id: str = ""
    query_params: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def has_body_method(self) -> bool:
        return self.method in BODY_METHODS

    @classmethod
    async def from_starlette(
        cls,
        request: Request,
        api_url: str,
        max_body_size: int,
        request_id: str = "",
    ) -> "ProxyRequest":
        """
        Build the context from a Starlette request.

        The body is streamed and reading stops as soon as it exceeds
        max_body_size, so an oversized upload is never fully buffered.
        """
        method = request.method.upper()
        path = request.query_params.get("path")
        extra = [(k, v) for k, v in request.query_params.multi_items() if k != "path"]

        body = b""
        if method in BODY_METHODS:
            chunks = []
            size = 0
            async for chunk in request.stream():
                chunks.append(chunk)
                size += len(chunk)
                if size > max_body_size:
                    break
            body = b"".join(chunks)

        peer = request.client.host if request.client else None
        return cls(
            method=method,
            path=path,
            upstream_url=resolve_upstream_url(path, api_url, extra),
            headers=request.headers,
            body=body,
            client_ip=client_ip_from(request.headers, peer),
            request_id=request_id,
            query_params=extra,
        )


@dataclass
class ProxyResponse:
    """
    What the pipeline returns.

    `error` is set when the response was produced from a ReelProxyError so the
    logging stage can report it; it is never serialized.
    """

    status_code: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)
    error: Optional[ReelProxyError] = None

    @property
    def content_type(self) -> Optional[str]:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300
