"""Organization context for tenancy enforcement."""

from dataclasses import dataclass
from enum import Enum
from uuid import UUID


class ContextMode(str, Enum):
    """How organization filtering applies to the current caller."""

    scoped = "scoped"
    global_ = "global"


@dataclass(frozen=True)
class OrganizationContext:
    """Org and user identity for one request or one task execution.

    The context is a value: it is built at request start, copied into a
    deferred task at enqueue time and rebuilt for every task execution.
    Nothing holds it in module state, so concurrent executions never see
    each other's tenant.
    """

    org_id: UUID | None
    user_id: UUID | None
    mode: ContextMode = ContextMode.scoped
    is_superadmin: bool = False

    @classmethod
    def scoped(
        cls, org_id: UUID, user_id: UUID, *, is_superadmin: bool = False
    ) -> "OrganizationContext":
        """Build a context bound to one organization."""
        return cls(org_id=org_id, user_id=user_id, is_superadmin=is_superadmin)

    @classmethod
    def global_context(cls, user_id: UUID) -> "OrganizationContext":
        """Build a superadmin context that bypasses organization filtering."""
        return cls(
            org_id=None,
            user_id=user_id,
            mode=ContextMode.global_,
            is_superadmin=True,
        )

    @classmethod
    def for_task(
        cls, org_id: UUID | None, user_id: UUID | None, is_superadmin: bool = False
    ) -> "OrganizationContext":
        """Rehydrate the context captured when a deferred task was enqueued."""
        if org_id is None and user_id is not None:
            return cls.global_context(user_id)
        return cls(org_id=org_id, user_id=user_id, is_superadmin=is_superadmin)

    @property
    def is_global(self) -> bool:
        return self.mode == ContextMode.global_

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None
