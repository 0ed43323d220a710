from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


PROCESSOR_SCOPES: frozenset[str] = frozenset({"jobs:read", "jobs:write"})
