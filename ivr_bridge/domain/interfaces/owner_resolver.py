"""
Owner Resolver Interface
Maps the number an inbound caller dialed to the owner scope that serves it
"""
from abc import ABC, abstractmethod
from typing import Optional


class OwnerResolver(ABC):

    @abstractmethod
    async def resolve_owner_for_inbound_number(self, to_number: Optional[str]) -> Optional[str]:
        """Owner id for the dialed number, or None when no owner is configured."""
        pass
