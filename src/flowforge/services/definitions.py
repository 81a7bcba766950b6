"""Workflow definition store: load, validate, cache and persist definitions."""

from __future__ import annotations

import logging
from typing import Any

from flowforge.config.loader import DefinitionError, DefinitionLoader, to_document
from flowforge.config.schema import WorkflowDefinition
from flowforge.control.acl import WorkflowACL
from flowforge.core.errors import WorkflowNotFoundError
from flowforge.observe.audit import AuditAction, AuditEvent
from flowforge.storage.base import CorruptRecordError, WorkflowStore

_log = logging.getLogger(__name__)


class DefinitionService:
    """Cache-aside access to workflow definitions.

    The store is the source of truth. Cache entries are only ever replaced
    whole, after the store write succeeded, so readers see either the old
    definition or the new one.
    """

    def __init__(self, store: WorkflowStore):
        self.store = store
        self._cache: dict[str, WorkflowDefinition] = {}

    async def load(self, workflow_id: str) -> WorkflowDefinition | None:
        """Return the definition, or None if it does not exist.

        A stored definition that fails validation raises ``DefinitionError``.
        """
        cached = self._cache.get(workflow_id)
        if cached is not None:
            return cached

        try:
            document = await self.store.load_definition(workflow_id)
        except CorruptRecordError as e:
            _log.error("Failed to load workflow %s: %s", workflow_id, e)
            raise DefinitionError(f"Invalid workflow '{workflow_id}': {e}")
        if document is None:
            _log.debug("Workflow %s not found", workflow_id)
            return None

        definition = DefinitionLoader.validate(document, workflow_id)
        self._cache[workflow_id] = definition
        _log.info("Workflow %s loaded (v%d)", workflow_id, definition.version)
        return definition

    async def get(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self.load(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)
        return definition

    async def list(self) -> list[WorkflowDefinition]:
        definitions, _ = await self.list_with_errors()
        return definitions

    async def list_with_errors(self) -> tuple[list[WorkflowDefinition], dict[str, str]]:
        """Load every definition, skipping invalid ones.

        Returns the valid definitions and ``{workflow_id: error}`` for the
        skipped ones, so one corrupt file never hides the rest.
        """
        definitions: list[WorkflowDefinition] = []
        errors: dict[str, str] = {}
        for workflow_id in await self.store.list_definition_ids():
            try:
                definition = await self.load(workflow_id)
            except DefinitionError as e:
                _log.warning("Skipping invalid workflow %s: %s", workflow_id, e)
                errors[workflow_id] = str(e)
                continue
            if definition is not None:
                definitions.append(definition)
        _log.info("Listed %d workflow(s), %d skipped", len(definitions), len(errors))
        return definitions, errors

    async def save(self, definition: WorkflowDefinition | dict, actor: str | None = None,
                   action: AuditAction = AuditAction.CREATED) -> WorkflowDefinition:
        """Validate and persist verbatim, including the caller's ``version``."""
        definition = DefinitionLoader.validate(definition, _source(definition))
        await self.store.save_definition(definition.id, to_document(definition))
        self._cache[definition.id] = definition
        await self._audit(action, definition.id, actor, definition.version)
        _log.info("Workflow %s saved (v%d)", definition.id, definition.version)
        return definition

    async def create(self, document: WorkflowDefinition | dict, actor: str | None = None) -> WorkflowDefinition:
        return await self.save(document, actor=actor, action=AuditAction.CREATED)

    async def replace(self, workflow_id: str, document: WorkflowDefinition | dict,
                      actor: str | None = None) -> WorkflowDefinition:
        """Full replacement; the version becomes previous + 1 (or 1)."""
        if isinstance(document, WorkflowDefinition):
            document = document.model_dump()
        if not isinstance(document, dict):
            raise DefinitionError(f"Workflow '{workflow_id}' must be a mapping (dict).")
        document = dict(document)

        body_id = document.setdefault("id", workflow_id)
        if body_id != workflow_id:
            raise DefinitionError(
                f"Workflow id '{body_id}' in the body does not match '{workflow_id}'"
            )

        try:
            previous = await self.load(workflow_id)
        except DefinitionError:
            # A corrupt predecessor has no trustworthy version.
            previous = None
        document["version"] = (previous.version if previous else 0) + 1

        action = AuditAction.UPDATED if previous else AuditAction.CREATED
        return await self.save(document, actor=actor, action=action)

    async def delete(self, workflow_id: str, actor: str | None = None) -> None:
        """Remove the definition. Runs pinned to it are unaffected."""
        deleted = await self.store.delete_definition(workflow_id)
        self._cache.pop(workflow_id, None)
        if not deleted:
            raise WorkflowNotFoundError(workflow_id)
        await self._audit(AuditAction.DELETED, workflow_id, actor)
        _log.info("Workflow %s deleted", workflow_id)

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------
    # ACL and audit

    async def get_acl(self, workflow_id: str) -> WorkflowACL | None:
        acls = await self.store.load_acls()
        document = acls.get(workflow_id)
        return WorkflowACL.model_validate(document) if document is not None else None

    async def save_acl(self, acl: WorkflowACL, actor: str | None = None) -> WorkflowACL:
        await self.store.save_acl(acl.workflow_id, acl.model_dump(mode="json"))
        await self._audit(AuditAction.ACL_UPDATED, acl.workflow_id, actor)
        _log.info("Workflow %s ACL saved", acl.workflow_id)
        return acl

    async def list_audit(self, workflow_id: str | None = None) -> list[AuditEvent]:
        entries = [AuditEvent.model_validate(e) for e in await self.store.read_audit()]
        if workflow_id is not None:
            entries = [e for e in entries if e.workflow_id == workflow_id]
        return entries

    async def _audit(self, action: AuditAction, workflow_id: str, actor: str | None,
                     version: int | None = None) -> None:
        event = AuditEvent(action=action, workflow_id=workflow_id, actor=actor, version=version)
        await self.store.append_audit(event.model_dump(mode="json"))


def _source(definition: Any) -> str:
    if isinstance(definition, dict):
        return str(definition.get("id", "<document>"))
    return getattr(definition, "id", "<document>")
