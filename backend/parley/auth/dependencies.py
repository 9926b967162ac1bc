"""FastAPI dependencies that bind the acting principal to a request."""
from typing import Optional

from fastapi import Depends, Request, WebSocket
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from parley.chat.service import ChatOrchestrator
from parley.context import CallContext
from parley.directory.schemas import User
from parley.errors import UnauthorizedError

from .service import TokenVerifier

security = HTTPBearer(auto_error=False)


def get_verifier(request: Request) -> TokenVerifier:
    return request.app.state.verifier


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    verifier: TokenVerifier = Depends(get_verifier),
) -> User:
    """Verify the ``Authorization: Bearer`` credential.

    Raises:
        UnauthorizedError: If the header is missing or the token is rejected.
    """
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Missing bearer token")
    return await verifier.verify(credentials.credentials)


async def get_call_context(
    request: Request,
    user: User = Depends(get_current_user),
) -> CallContext:
    timeout = request.app.state.settings.database.operation_timeout_seconds
    return CallContext(principal=user, timeout=timeout)


def websocket_credential(websocket: WebSocket) -> Optional[str]:
    """Handshake credential: ``?token=`` first, then ``Authorization: Bearer``."""
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None
