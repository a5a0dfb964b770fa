from dataclasses import dataclass, field
from enum import Enum
from uuid import uuid4

from aggregator.core.telemetry import current_request_id


class PrincipalType(str, Enum):
    HUMAN = "human"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    role: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


@dataclass(slots=True)
class RequestContext:
    """Per-request values carried into store, registry and invoker calls for tracing."""

    user_id: str | None = None
    request_id: str = field(default_factory=lambda: current_request_id() or uuid4().hex)

    @classmethod
    def for_principal(cls, principal: Principal) -> "RequestContext":
        return cls(user_id=principal.subject)
