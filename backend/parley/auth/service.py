"""Bearer credential verification.

One capability, ``TokenVerifier.verify(credential) -> User``, serves both
the HTTP dependency and the WebSocket handshake. Two implementations:

    JWTTokenVerifier     - local HS256 verification with PyJWT, then a
                           directory lookup of the ``sub`` claim
    RemoteTokenVerifier  - asks the identity service; its answer is an
                           encrypted envelope whose ``data`` is the principal,
                           which is mirrored into the directory
"""
import logging
from typing import Optional

import httpx
import jwt
from pydantic import ValidationError

from parley.config import AppSettings
from parley.database import run_bounded
from parley.directory.schemas import User
from parley.directory.service import UserDirectory
from parley.envelope.cipher import EnvelopeCipher
from parley.errors import ChatError, UnauthorizedError

logger = logging.getLogger(__name__)


class TokenVerifier:
    """Resolves a bearer credential into a known user."""

    async def verify(self, credential: Optional[str]) -> User:
        """Return the principal for *credential*.

        Raises:
            UnauthorizedError: Missing, invalid or unknown credential.
        """
        raise NotImplementedError


class JWTTokenVerifier(TokenVerifier):
    def __init__(
        self,
        directory: UserDirectory,
        secret_key: str,
        algorithm: str = "HS256",
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.directory = directory
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.timeout = timeout

    def decode(self, credential: str) -> dict:
        try:
            return jwt.decode(
                credential,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={
                    "require": ["sub"],
                    "verify_aud": self.audience is not None,
                    "verify_iss": self.issuer is not None,
                },
            )
        except jwt.ExpiredSignatureError:
            raise UnauthorizedError("Token has expired") from None
        except jwt.InvalidTokenError as e:
            logger.info("[Auth] Rejected token: %s", e)
            raise UnauthorizedError("Invalid token") from None

    async def verify(self, credential: Optional[str]) -> User:
        if not credential:
            raise UnauthorizedError("Missing bearer token")
        claims = self.decode(credential)
        user = await run_bounded(
            "directory.get", self.timeout, self.directory.get, str(claims["sub"])
        )
        if user is None:
            raise UnauthorizedError("User not found")
        return user


class RemoteTokenVerifier(TokenVerifier):
    """Delegates verification to the identity service."""

    def __init__(
        self,
        directory: UserDirectory,
        cipher: EnvelopeCipher,
        base_url: str,
        verify_path: str = "/auth/is-valid-user",
        request_timeout: float = 5.0,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.directory = directory
        self.cipher = cipher
        self.url = base_url.rstrip("/") + verify_path
        self.request_timeout = request_timeout
        self.timeout = timeout
        self._transport = transport

    async def _fetch(self, credential: str) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.request_timeout, transport=self._transport
        ) as client:
            return await client.get(self.url, headers={"Authorization": f"Bearer {credential}"})

    async def verify(self, credential: Optional[str]) -> User:
        if not credential:
            raise UnauthorizedError("Missing bearer token")
        try:
            resp = await self._fetch(credential)
        except httpx.HTTPError as e:
            logger.error("[Auth] Identity service unreachable at %s: %s", self.url, e)
            raise UnauthorizedError("Identity service unavailable") from None

        if resp.status_code != 200:
            logger.info("[Auth] Identity service rejected token (status %s)", resp.status_code)
            raise UnauthorizedError("Invalid token")

        try:
            body = resp.json()
            envelope = self.cipher.decrypt(body if isinstance(body, str) else body.get("data"))
            principal = User.model_validate(envelope.get("data") or {})
        except (ValueError, ChatError, AttributeError, ValidationError) as e:
            logger.warning("[Auth] Unusable identity service response: %s", e)
            raise UnauthorizedError("Invalid token") from None

        return await run_bounded("directory.upsert", self.timeout, self.directory.upsert, principal)


def build_verifier(settings: AppSettings, directory: UserDirectory, cipher: EnvelopeCipher) -> TokenVerifier:
    """Build the verifier selected by ``auth.mode``."""
    timeout = settings.database.operation_timeout_seconds
    if settings.auth.mode == "remote":
        logger.info("[Auth] Verifying tokens remotely at %s", settings.auth.identity_service_url)
        return RemoteTokenVerifier(
            directory,
            cipher,
            settings.auth.identity_service_url,
            verify_path=settings.auth.verify_path,
            request_timeout=settings.auth.request_timeout_seconds,
            timeout=timeout,
        )
    return JWTTokenVerifier(
        directory,
        settings.secrets.jwt.secret_key,
        algorithm=settings.secrets.jwt.algorithm,
        issuer=settings.auth.issuer,
        audience=settings.auth.audience,
        timeout=timeout,
    )
