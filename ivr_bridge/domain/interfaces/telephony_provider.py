"""
Telephony Provider Interface
Abstract base class for PSTN / browser-calling providers
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class ProviderCallError(Exception):
    """An AI or telephony provider API call failed or timed out."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"{provider}: {message}")


class TelephonyProvider(ABC):
    """
    Abstract base class for telephony providers.

    Call-control instructions are provider-specific (NCCO, TwiML, ...);
    the core builds them through hold_in_room / join_room / say and passes
    them back opaquely.
    """

    @abstractmethod
    async def place_call(self, to_number: str, instructions: List[Dict[str, Any]]) -> str:
        """
        Initiate an outbound PSTN call.

        Returns:
            Telephony call id
        """
        pass

    @abstractmethod
    async def redirect_call(self, telephony_call_id: str, instructions: List[Dict[str, Any]]) -> None:
        """Replace the instructions of a live call leg. Raises ProviderCallError."""
        pass

    @abstractmethod
    def issue_browser_token(self, identity: str) -> str:
        """Access token letting an agent console place/receive browser calls."""
        pass

    @abstractmethod
    def hold_in_room(self, room_id: str, message: Optional[str] = None) -> List[Dict[str, Any]]:
        """Instructions that park a caller in the named room until an agent joins."""
        pass

    @abstractmethod
    def join_room(self, room_id: str) -> List[Dict[str, Any]]:
        """Instructions that connect an agent leg to the named room and close it on exit."""
        pass

    @abstractmethod
    def say(self, message: str) -> List[Dict[str, Any]]:
        """Instructions that speak a message."""
        pass

    @abstractmethod
    def collect_digit(self, message: str) -> List[Dict[str, Any]]:
        """Instructions that speak a prompt and wait for one keypad digit."""
        pass

    @abstractmethod
    def connect_to_number(self, number: str, message: Optional[str] = None) -> List[Dict[str, Any]]:
        """Instructions that forward the leg to a phone number."""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name"""
        pass
