"""Append-only audit entries for definition and ACL changes."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from flowforge.core.run import utcnow


class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    ACL_UPDATED = "acl_updated"


class AuditEvent(BaseModel):
    action: AuditAction
    workflow_id: str
    actor: Optional[str] = None
    version: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)
    details: dict = Field(default_factory=dict)
