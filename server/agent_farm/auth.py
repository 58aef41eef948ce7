"""Request guards for the local servers: localhost-only Host/Origin and body limits."""

from __future__ import annotations

from urllib.parse import urlsplit

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

LOCAL_HOSTNAMES = frozenset({"localhost", "127.0.0.1", "::1"})
LOCAL_ORIGIN_REGEX = r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$"

MAX_BODY_BYTES = 1024 * 1024


def _hostname(value: str) -> str | None:
    try:
        return urlsplit(f"//{value}").hostname
    except ValueError:
        return None


def is_request_allowed(request: Request) -> bool:
    """Reject non-local Host headers (DNS rebinding) and non-local Origins."""
    host = request.headers.get("host")
    if host and _hostname(host) not in LOCAL_HOSTNAMES:
        return False

    origin = request.headers.get("origin")
    if origin:
        try:
            parts = urlsplit(origin)
        except ValueError:
            return False
        if parts.scheme not in ("http", "https") or parts.hostname not in LOCAL_HOSTNAMES:
            return False
    return True


async def localhost_only(request: Request, call_next):
    if not is_request_allowed(request):
        return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)

    length = request.headers.get("content-length")
    if length and length.isdigit() and int(length) > MAX_BODY_BYTES:
        return JSONResponse(
            {"detail": "Request body too large"},
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        )

    response = await call_next(request)
    if request.url.path.startswith("/api/"):
        response.headers["Cache-Control"] = "no-store"
    return response


def install_guards(app: FastAPI) -> None:
    """Attach the localhost guard and a localhost-only CORS policy to ``app``."""
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=LOCAL_ORIGIN_REGEX,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    # Registered last so it runs first
    app.middleware("http")(localhost_only)
