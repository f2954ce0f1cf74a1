"""Actor identity as supplied by the identity provider for every command."""
from dataclasses import dataclass
from typing import Optional

from requestflow.models.enums import Role


@dataclass(frozen=True)
class Actor:
    """Already authenticated at the transport boundary; the engine only checks roles."""
    actor_id: str
    role: Role
    department_id: Optional[str] = None

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles
