"""The caller identity handed to every service call."""
from dataclasses import dataclass, field
from typing import FrozenSet

CAN_ASSIGN = "work_orders.assign"
CAN_CANCEL = "work_orders.cancel"


@dataclass(frozen=True)
class Actor:
    """
    Opaque token from the identity provider.

    The services never look up sessions or cookies; whoever calls them
    resolves the user first and passes it in.
    """
    user_id: int
    company_id: int
    capabilities: FrozenSet[str] = field(default_factory=frozenset)

    def can(self, capability: str) -> bool:
        return capability in self.capabilities
