"""FastAPI integration for the encrypted envelope.

``EnvelopeRoute`` is an ``APIRoute`` subclass: it decrypts the incoming
query/body ``data`` field, runs the normal FastAPI handler, then seals the
handler's JSON result into the success envelope:

    {status_code, data, message?, metadata?, time_stamp}

Errors never reach handlers' own formatting: the exception handlers
registered by :func:`register_exception_handlers` seal

    {statusCode, errors[], path, method, time_stamp}

for domain errors, validation errors, HTTP errors (including unknown
routes) and unexpected failures alike.
"""
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from parley.errors import BadRequestError, ChatError, DecryptionError

from .cipher import EnvelopeCipher

logger = logging.getLogger(__name__)

_BODY_METHODS = ("POST", "PUT", "PATCH", "DELETE")
_API_RESPONSE_KEYS = {"status_code", "data", "message", "metadata"}


class ApiResponse(BaseModel):
    """Optional handler return type to control the success envelope.

    Handlers that return plain data get ``{status_code, data}``; handlers
    that return this model can also set ``message`` and ``metadata``.
    """
    status_code: Optional[int] = None
    data: Any = None
    message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _cipher(request: Request) -> EnvelopeCipher:
    return request.app.state.cipher


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


# =============================================================================
# Request decryption
# =============================================================================


def _decrypt_query(request: Request, cipher: EnvelopeCipher) -> Optional[bytes]:
    """Return a rewritten query string, or None when there is no ``data``."""
    params = request.query_params
    token = params.get("data")
    if token is None:
        return None

    try:
        decrypted = cipher.decrypt(token)
    except DecryptionError as exc:
        # Query data is optional; drop it but keep the cause in the logs.
        logger.warning(
            "Ignoring undecryptable query data on [%s] %s: %s",
            request.method, request.url.path, exc.message,
        )
        decrypted = {}

    items = [(key, value) for key, value in params.multi_items() if key != "data"]
    if isinstance(decrypted, dict):
        for key, value in decrypted.items():
            if isinstance(value, list):
                items.extend((key, _query_value(v)) for v in value)
            else:
                items.append((key, _query_value(value)))
    else:
        logger.warning(
            "Query data on [%s] %s did not decrypt to an object; ignored",
            request.method, request.url.path,
        )
    return urlencode(items).encode("latin-1")


async def _decrypt_body(request: Request, cipher: EnvelopeCipher) -> Optional[bytes]:
    """Return a rewritten JSON body, or None when it carries no ``data``."""
    if request.method not in _BODY_METHODS:
        return None
    body = await request.body()
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        # Let FastAPI report the malformed body through normal validation.
        return None
    if not isinstance(payload, dict) or "data" not in payload:
        return None

    token = payload.pop("data")
    if not isinstance(token, str):
        raise DecryptionError()
    decrypted = cipher.decrypt(token)
    if not isinstance(decrypted, dict):
        raise BadRequestError("Encrypted body must decode to an object")

    payload.update(decrypted)
    return json.dumps(payload).encode("utf-8")


async def decrypt_request(request: Request, cipher: EnvelopeCipher) -> Request:
    """Build a new Request whose query and body carry the decrypted fields."""
    query_string = _decrypt_query(request, cipher)
    body = await _decrypt_body(request, cipher)
    if query_string is None and body is None:
        return request

    scope = dict(request.scope)
    if query_string is not None:
        scope["query_string"] = query_string
    if body is None:
        body = await request.body() if request.method in _BODY_METHODS else b""
    else:
        scope["headers"] = [
            (name, value) for name, value in request.scope["headers"]
            if name != b"content-length"
        ] + [(b"content-length", str(len(body)).encode("latin-1"))]

    async def receive() -> dict:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


# =============================================================================
# Response sealing
# =============================================================================


def _response_payload(response: Response) -> Any:
    if not response.body:
        return None
    try:
        return json.loads(response.body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.body.decode("utf-8", errors="replace")


def seal_response(response: Response, cipher: EnvelopeCipher) -> JSONResponse:
    """Wrap a handler's response in the encrypted success envelope."""
    body = _response_payload(response)

    if isinstance(body, dict) and set(body) == _API_RESPONSE_KEYS:
        envelope: Dict[str, Any] = {
            "status_code": body.get("status_code") or response.status_code,
            "data": body.get("data"),
        }
        if body.get("message"):
            envelope["message"] = body["message"]
        if body.get("metadata"):
            envelope["metadata"] = body["metadata"]
    else:
        envelope = {"status_code": response.status_code, "data": body}
    envelope["time_stamp"] = _timestamp()

    return JSONResponse(
        cipher.encrypt(envelope),
        status_code=response.status_code,
        background=response.background,
    )


class EnvelopeRoute(APIRoute):
    """APIRoute that decrypts requests and encrypts responses."""

    def get_route_handler(self) -> Callable:
        original_route_handler = super().get_route_handler()

        async def envelope_route_handler(request: Request) -> Response:
            cipher = _cipher(request)
            started = time.perf_counter()
            logger.info("Incoming → [%s] %s", request.method, request.url.path)

            request = await decrypt_request(request, cipher)
            response = await original_route_handler(request)
            sealed = seal_response(response, cipher)

            logger.info(
                "Outgoing → %s | [%s] %s | %dms",
                sealed.status_code, request.method, request.url.path,
                (time.perf_counter() - started) * 1000,
            )
            return sealed

        return envelope_route_handler


# =============================================================================
# Error envelope
# =============================================================================


def format_validation_errors(exc: RequestValidationError) -> List[str]:
    """Flatten pydantic errors into ``"field: message"`` strings."""
    messages = []
    for error in exc.errors():
        loc = ".".join(
            str(part) for part in error.get("loc", ())
            if part not in ("body", "query", "path")
        )
        msg = error.get("msg", "Invalid value")
        messages.append(f"{loc}: {msg}" if loc else msg)
    return messages


def error_response(request: Request, status_code: int, errors: List[str]) -> JSONResponse:
    """Seal the error envelope for *request*."""
    body = {
        "statusCode": status_code,
        "errors": errors,
        "path": request.url.path,
        "method": request.method,
        "time_stamp": _timestamp(),
    }
    return JSONResponse(_cipher(request).encrypt(body), status_code=status_code)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers that convert every failure into the error envelope."""

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("[%s] %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.warning(
                "[%s] %s rejected (%s): %s",
                request.method, request.url.path, exc.status_code, exc.message,
            )
        return error_response(request, exc.status_code, [exc.message])

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = format_validation_errors(exc)
        logger.warning("[%s] %s validation failed: %s", request.method, request.url.path, errors)
        return error_response(request, 400, errors)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail
        errors = [str(item) for item in detail] if isinstance(detail, list) else [str(detail)]
        logger.warning(
            "[%s] %s returned %s: %s", request.method, request.url.path, exc.status_code, errors,
        )
        return error_response(request, exc.status_code, errors)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("[%s] %s crashed", request.method, request.url.path)
        return error_response(request, 500, ["Internal server error"])
