"""
AI Call Provider Interface
Abstract base class for providers that run AI-driven phone conversations
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ivr_bridge.domain.models import AICallEvent, Agent, Instruction


class AICallProvider(ABC):
    """Abstract base class for AI call providers"""

    @abstractmethod
    async def place_call(self, destination_phone: str, conversation_config: Dict[str, Any]) -> str:
        """
        Start an AI-driven outbound call.

        Returns:
            The provider's call id. Raises ProviderCallError on failure.
        """
        pass

    @abstractmethod
    async def get_call(self, ai_call_id: str) -> AICallEvent:
        """
        Current state of a call as the provider sees it, artifacts included.
        Raises ProviderCallError on failure.
        """
        pass

    @abstractmethod
    def render_instruction(self, instruction: Instruction, tool_call_id: Optional[str] = None) -> Dict[str, Any]:
        """Webhook response body carrying the instruction to the provider."""
        pass

    @abstractmethod
    def render_transfer_destinations(self, agents: List[Agent]) -> Dict[str, Any]:
        """Webhook response body listing agents the assistant may transfer to."""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name"""
        pass
