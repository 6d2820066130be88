"""
Unit Tests for the Agent Directory
"""
import pytest

from ivr_bridge.domain.models import AGENT_IDENTITY_PREFIX, Agent, agent_identity


class TestAgentKeys:
    """Transfer keys select exactly one agent per owner scope"""

    @pytest.mark.asyncio
    async def test_duplicate_key_in_scope_is_rejected(self, make_agent):
        await make_agent(key_press="1", owner_id="owner-1")

        with pytest.raises(ValueError):
            await make_agent(key_press="1", name="Bob", owner_id="owner-1")

    @pytest.mark.asyncio
    async def test_duplicate_key_without_owner_is_rejected(self, make_agent):
        await make_agent(key_press="4")

        with pytest.raises(ValueError):
            await make_agent(key_press="4", name="Bob")

    @pytest.mark.asyncio
    async def test_same_key_in_other_scope(self, container, make_agent):
        await make_agent(key_press="1", owner_id="owner-1")
        other = await make_agent(key_press="1", name="Bob", owner_id="owner-2")

        found = await container.agents_repo.find_available_by_key("owner-2", "1")

        assert found.id == other.id

    @pytest.mark.asyncio
    async def test_list_available_orders_by_key(self, container, make_agent):
        await make_agent(key_press="3", name="Cara")
        await make_agent(key_press="1", name="Alice")
        await make_agent(key_press="2", name="Bob", is_available=False)

        agents = await container.agents_repo.list_available()

        assert [a.name for a in agents] == ["Alice", "Cara"]


class TestAgentIdentity:

    def test_identity_matches_helper(self):
        agent = Agent(id="x", name="Alice", phone_number="+15557770001", key_press="1")

        assert agent.identity == agent_identity("x") == f"{AGENT_IDENTITY_PREFIX}x"
        assert agent.identity == "agent-x"
