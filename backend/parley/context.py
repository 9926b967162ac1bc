"""Explicit per-call context threaded from the edges into the orchestrator."""
from dataclasses import dataclass

from parley.directory.schemas import User

DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class CallContext:
    """Who is acting and how long store work may take.

    Attributes:
        principal: The verified user performing the call.
        timeout: Upper bound in seconds for each store operation.
    """
    principal: User
    timeout: float = DEFAULT_TIMEOUT_SECONDS

    @property
    def user_id(self) -> str:
        return self.principal.id
