"""
ReelProxy — Proxy Route Handler
================================

What:  Handles /api?path=<upstream path> for every HTTP method.
How:   Converts the Starlette request into a ProxyRequest, runs it through
       the pipeline built at startup, converts the ProxyResponse back.
Who:   Called by any browser or server-side client of the upstream API.

Request Flow:
    1. Client calls /api?path=/movie/550&language=en-US
    2. ProxyRequest.from_starlette reads method, path, extra params and body
    3. Pipeline: CORS → logging → errors → rate limit → method → body size
       → content type → path → timeout → cache → upstream
    4. The pipeline's status, headers and body are returned verbatim

The route registers every common verb so that disallowed ones reach the
pipeline's method validator (405 with Allow + CORS headers) instead of
Starlette's bare 405.
"""

from fastapi import APIRouter, Depends, Request, Response

from reelproxy.pipeline.context import ProxyRequest
from reelproxy.pipeline.handlers import Handler
from reelproxy.schemas.health import ErrorResponse

router = APIRouter(tags=["Proxy"])

ROUTED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


def get_pipeline(request: Request) -> Handler:
    """Pipeline head built by create_app()."""
    return request.app.state.pipeline


@router.api_route(
    "/api",
    methods=ROUTED_METHODS,
    responses={
        400: {"description": "Missing/invalid path or malformed body", "model": ErrorResponse},
        405: {"description": "Method not allowed", "model": ErrorResponse},
        413: {"description": "Body larger than MAX_BODY_SIZE", "model": ErrorResponse},
        415: {"description": "Body is not application/json", "model": ErrorResponse},
        429: {"description": "Rate limit exceeded", "model": ErrorResponse},
        502: {"description": "Upstream unreachable", "model": ErrorResponse},
        503: {"description": "Upstream circuit open", "model": ErrorResponse},
        504: {"description": "Upstream timeout", "model": ErrorResponse},
    },
    summary="Proxy a request to the upstream API",
    description=(
        "Forwards the request to `API_URL` + `path` with the configured bearer "
        "credential. All other query parameters are forwarded. Successful GET "
        "responses are cached in memory (see the X-Cache response header)."
    ),
)
async def proxy(request: Request, pipeline: Handler = Depends(get_pipeline)) -> Response:
    app_settings = request.app.state.settings
    proxy_request = await ProxyRequest.from_starlette(
        request,
        api_url=app_settings.api_url,
        max_body_size=app_settings.max_body_size,
        request_id=getattr(request.state, "request_id", ""),
    )
    result = await pipeline.handle(proxy_request)
    return Response(
        content=result.body,
        status_code=result.status_code,
        headers=result.headers,
    )
