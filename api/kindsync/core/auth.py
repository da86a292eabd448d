from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    OPERATOR = "operator"
    WORKER = "worker"


OPERATOR_SCOPES = {"imports:read", "imports:write", "imports:run", "pending:read", "pending:write", "webhooks:admin"}
WORKER_SCOPES = {"imports:read", "imports:run"}


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")
