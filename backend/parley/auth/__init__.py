"""Bearer token verification shared by HTTP routes and the WebSocket handshake."""
from .service import JWTTokenVerifier, RemoteTokenVerifier, TokenVerifier, build_verifier

__all__ = ["JWTTokenVerifier", "RemoteTokenVerifier", "TokenVerifier", "build_verifier"]
