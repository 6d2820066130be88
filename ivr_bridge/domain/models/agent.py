"""
Agent Model
"""
from pydantic import BaseModel, Field
from typing import Optional

AGENT_IDENTITY_PREFIX = "agent-"


def agent_identity(agent_id: str) -> str:
    """Client identity an agent's browser leg presents, e.g. 'agent-a1'."""
    return f"{AGENT_IDENTITY_PREFIX}{agent_id}"


class Agent(BaseModel):
    """Human agent who can receive transferred calls"""
    id: str
    owner_id: Optional[str] = None
    name: str
    phone_number: str
    key_press: str = Field(..., pattern=r"^[0-9]$", description="Single DTMF digit, unique per owner")
    email: Optional[str] = None
    department: Optional[str] = None
    is_available: bool = True

    @property
    def identity(self) -> str:
        """Client identity used for browser calling tokens."""
        return agent_identity(self.id)

    def menu_description(self) -> str:
        """Spoken menu line, e.g. 'Press 1 for Alice (Sales)'."""
        dept = f" ({self.department})" if self.department else ""
        return f"Press {self.key_press} for {self.name}{dept}"
