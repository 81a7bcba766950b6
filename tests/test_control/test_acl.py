"""Tests for per-workflow access control."""

from __future__ import annotations

import pytest

from flowforge.control.acl import AccessPolicy, WorkflowACL
from flowforge.core.errors import AccessDeniedError
from flowforge.services.definitions import DefinitionService


@pytest.fixture
def definitions(store):
    return DefinitionService(store)


@pytest.fixture
def policy(definitions):
    return AccessPolicy(definitions)


async def set_acl(definitions, **grants):
    await definitions.save_acl(WorkflowACL(workflow_id="feature", **grants))


class TestAccessPolicy:
    @pytest.mark.asyncio
    async def test_no_acl_is_open(self, policy):
        assert await policy.can_start("feature", None)
        assert await policy.can_resume("feature", "anyone")

    @pytest.mark.asyncio
    async def test_grants(self, policy, definitions):
        await set_acl(definitions, starters=["dev"], resumers=["lead"])

        assert await policy.can_start("feature", "dev")
        assert not await policy.can_resume("feature", "dev")
        assert await policy.can_resume("feature", "lead")
        assert not await policy.can_start("feature", None)

    @pytest.mark.asyncio
    async def test_owner_may_do_everything(self, policy, definitions):
        await set_acl(definitions, owners=["alice"])
        assert await policy.can_start("feature", "alice")
        assert await policy.can_resume("feature", "alice")

    @pytest.mark.asyncio
    async def test_wildcard_admits_anonymous(self, policy, definitions):
        await set_acl(definitions, starters=["*"])
        assert await policy.can_start("feature", None)
        assert await policy.can_start("feature", "anyone")
        assert not await policy.can_resume("feature", "anyone")

    @pytest.mark.asyncio
    async def test_blocked_wins(self, policy, definitions):
        await set_acl(definitions, owners=["mallory"], starters=["*"], blocked=["mallory"])
        assert not await policy.can_start("feature", "mallory")

    @pytest.mark.asyncio
    async def test_check_raises(self, policy, definitions):
        await set_acl(definitions, resumers=["lead"])
        with pytest.raises(AccessDeniedError) as exc_info:
            await policy.check_resume("feature", "dev")

        assert exc_info.value.action == "resume"
        assert exc_info.value.actor == "dev"
        await policy.check_resume("feature", "lead")
