"""Per-workflow access control for run-mutating operations."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from flowforge.core.errors import AccessDeniedError

WILDCARD = "*"


class WorkflowACL(BaseModel):
    workflow_id: str
    owners: list[str] = Field(default_factory=list)
    starters: list[str] = Field(default_factory=list)
    resumers: list[str] = Field(default_factory=list)
    blocked: list[str] = Field(default_factory=list)


class AccessPolicy:
    """Answers ``can_start`` / ``can_resume`` / ``can_admin`` from stored ACLs.

    Workflows without an ACL are open to everyone. With an ACL, ``blocked``
    wins over every grant, owners may do everything, and ``*`` in a grant
    list admits any actor, including anonymous ones.
    """

    def __init__(self, definitions: Any):
        self.definitions = definitions

    async def can_start(self, workflow_id: str, actor: str | None) -> bool:
        acl = await self.definitions.get_acl(workflow_id)
        return self._allowed(acl, actor, acl.starters if acl else [])

    async def can_resume(self, workflow_id: str, actor: str | None) -> bool:
        acl = await self.definitions.get_acl(workflow_id)
        return self._allowed(acl, actor, acl.resumers if acl else [])

    async def can_admin(self, workflow_id: str, actor: str | None) -> bool:
        """Administrative actions such as force-fail are reserved to owners."""
        acl = await self.definitions.get_acl(workflow_id)
        return self._allowed(acl, actor, acl.owners if acl else [])

    async def check_start(self, workflow_id: str, actor: str | None) -> None:
        if not await self.can_start(workflow_id, actor):
            raise AccessDeniedError("start", workflow_id, actor)

    async def check_resume(self, workflow_id: str, actor: str | None) -> None:
        if not await self.can_resume(workflow_id, actor):
            raise AccessDeniedError("resume", workflow_id, actor)

    async def check_admin(self, workflow_id: str, actor: str | None) -> None:
        if not await self.can_admin(workflow_id, actor):
            raise AccessDeniedError("force-fail", workflow_id, actor)

    @staticmethod
    def _allowed(acl: WorkflowACL | None, actor: str | None, granted: list[str]) -> bool:
        if acl is None:
            return True
        if actor is not None and actor in acl.blocked:
            return False
        if WILDCARD in granted:
            return True
        if actor is None:
            return False
        return actor in acl.owners or actor in granted
