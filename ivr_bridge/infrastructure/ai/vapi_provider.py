"""
Vapi AI Call Provider
Places assistant-driven outbound calls and renders webhook responses for Vapi
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from ivr_bridge.domain.interfaces.ai_call_provider import AICallProvider
from ivr_bridge.domain.interfaces.telephony_provider import ProviderCallError
from ivr_bridge.domain.models import AICallEvent, Agent, Instruction, InstructionKind
from ivr_bridge.infrastructure.ai.vapi_events import parse_vapi_call

logger = logging.getLogger(__name__)


class VapiProvider(AICallProvider):
    """
    Vapi REST client.

    Setup Required:
    - VAPI_API_KEY
    - VAPI_PHONE_NUMBER_ID (the Vapi number calls are placed from)
    - VAPI_WEBHOOK_URL pointing at /api/v1/webhooks/ai
    """

    DEFAULT_FIRST_MESSAGE = "Hello, how can I help you today?"

    def __init__(
        self,
        api_key: Optional[str],
        phone_number_id: Optional[str],
        webhook_url: Optional[str],
        base_url: str = "https://api.vapi.ai",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self._phone_number_id = phone_number_id
        self._webhook_url = webhook_url
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return "vapi"

    @staticmethod
    def transfer_menu(agents: List[Agent]) -> str:
        """System-prompt addendum telling the assistant which keys reach which agent."""
        available = [a for a in agents if a.is_available]
        if not available:
            return ""
        options = ", ".join(a.menu_description() for a in available)
        return (
            "\n\nCALL TRANSFER OPTIONS:\n"
            f'If the customer wants to speak with a human agent, tell them: "{options}". '
            "When they press a key, the call will be automatically transferred."
        )

    def build_call_payload(self, destination_phone: str, conversation_config: Dict[str, Any]) -> Dict[str, Any]:
        agents = conversation_config.get("agents") or []
        system_prompt = (conversation_config.get("system_prompt") or "") + self.transfer_menu(agents)

        model_messages = [{"role": "system", "content": system_prompt}]
        if conversation_config.get("script"):
            model_messages.append({"role": "assistant", "content": conversation_config["script"]})

        assistant: Dict[str, Any] = {
            "model": {
                "provider": conversation_config.get("model_provider", "openai"),
                "model": conversation_config.get("model", "gpt-4"),
                "messages": model_messages,
                "temperature": conversation_config.get("temperature", 0.7),
                "maxTokens": conversation_config.get("max_tokens", 500),
            },
            "firstMessage": conversation_config.get("first_message") or self.DEFAULT_FIRST_MESSAGE,
            "recordingEnabled": True,
            "endCallFunctionEnabled": True,
            "dialKeypadFunctionEnabled": True,
        }
        if conversation_config.get("voice_id"):
            assistant["voice"] = {
                "provider": conversation_config.get("voice_provider", "openai"),
                "voiceId": conversation_config["voice_id"],
            }
        if self._webhook_url:
            assistant["serverUrl"] = self._webhook_url
        assistant.update(conversation_config.get("assistant_overrides") or {})

        customer: Dict[str, Any] = {"number": destination_phone}
        if conversation_config.get("customer_name"):
            customer["name"] = conversation_config["customer_name"]

        payload: Dict[str, Any] = {
            "phoneNumberId": self._phone_number_id,
            "customer": customer,
            "assistant": assistant,
        }
        if conversation_config.get("metadata"):
            payload["metadata"] = conversation_config["metadata"]
        return payload

    async def place_call(self, destination_phone: str, conversation_config: Dict[str, Any]) -> str:
        if not self._api_key:
            raise ProviderCallError(self.name, "VAPI_API_KEY not configured")

        payload = self.build_call_payload(destination_phone, conversation_config)
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(f"{self._base_url}/call/phone", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Vapi create call failed: {e}")
            raise ProviderCallError(self.name, f"request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Vapi create call error {response.status_code}: {response.text}")
            raise ProviderCallError(self.name, f"HTTP {response.status_code}: {response.text[:200]}")

        call_id = response.json().get("id")
        if not call_id:
            raise ProviderCallError(self.name, "No call id returned from Vapi")
        logger.info(f"Vapi call created: {call_id} -> {destination_phone}")
        return call_id

    async def get_call(self, ai_call_id: str) -> AICallEvent:
        if not self._api_key:
            raise ProviderCallError(self.name, "VAPI_API_KEY not configured")

        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(f"{self._base_url}/call/{ai_call_id}", headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Vapi get call {ai_call_id} failed: {e}")
            raise ProviderCallError(self.name, f"request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Vapi get call {ai_call_id} error {response.status_code}: {response.text}")
            raise ProviderCallError(self.name, f"HTTP {response.status_code}: {response.text[:200]}")

        return parse_vapi_call(response.json())

    def render_instruction(self, instruction: Instruction, tool_call_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Tool-call result body.

        A transfer is answered with a `destination` Vapi forwards the call to;
        everything else is a plain result string the assistant speaks.
        """
        result: Dict[str, Any] = {}
        if tool_call_id:
            result["toolCallId"] = tool_call_id

        if instruction.kind == InstructionKind.TRANSFER:
            result["result"] = "transfer"
            destination = {
                "type": "number",
                "number": instruction.destination_number,
                "message": instruction.message,
            }
            return {"results": [result], "destination": destination}

        result["result"] = instruction.message
        return {"results": [result]}

    def render_transfer_destinations(self, agents: List[Agent]) -> Dict[str, Any]:
        destinations = [
            {
                "type": "number",
                "number": agent.phone_number,
                "description": agent.menu_description(),
                "message": f"Transferring you to {agent.name}. Please hold.",
            }
            for agent in agents
            if agent.is_available
        ]
        return {"assistant": {"transferDestinations": destinations}}
