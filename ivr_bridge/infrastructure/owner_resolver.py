"""
Configured Owner Resolver
Looks up the owner of an inbound number in the YAML owner map
"""
import logging
from typing import Optional

from ivr_bridge.core.config import ConfigManager
from ivr_bridge.domain.interfaces.owner_resolver import OwnerResolver

logger = logging.getLogger(__name__)


def _digits(number: str) -> str:
    return "".join(ch for ch in number if ch.isdigit())


class ConfiguredOwnerResolver(OwnerResolver):
    """
    Resolves owners from `owners.numbers` in config.

    Numbers are compared by digits only, so "+1 888-470-6735" and
    "18884706735" match. Unlisted numbers resolve to None.
    """

    def __init__(self, config: ConfigManager):
        numbers = config.get("owners.numbers") or {}
        self._owners = {_digits(str(k)): str(v) for k, v in numbers.items()}

    async def resolve_owner_for_inbound_number(self, to_number: Optional[str]) -> Optional[str]:
        if not to_number:
            return None
        owner_id = self._owners.get(_digits(to_number))
        if owner_id is None:
            logger.info(f"No owner configured for inbound number {to_number}")
        return owner_id
