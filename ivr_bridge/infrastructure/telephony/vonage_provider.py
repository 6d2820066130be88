"""
Vonage Telephony Provider
PSTN call control, NCCO conversation rooms and browser client tokens via the Vonage Voice API
"""
import asyncio
import logging
import os
import time
import uuid
from typing import Any, Dict, List, Optional

import jwt
import vonage

from ivr_bridge.domain.interfaces.telephony_provider import ProviderCallError, TelephonyProvider

logger = logging.getLogger(__name__)


# Paths a browser client needs to place and receive in-app voice calls
CLIENT_ACL = {
    "paths": {
        "/*/users/**": {},
        "/*/conversations/**": {},
        "/*/sessions/**": {},
        "/*/devices/**": {},
        "/*/image/**": {},
        "/*/media/**": {},
        "/*/knocking/**": {},
        "/*/legs/**": {},
    }
}


class VonageTelephonyProvider(TelephonyProvider):
    """
    Vonage Voice API client.

    Responsibilities:
    - Build NCCOs that hold callers / join agents in named conversations
    - Build keypad menus and forwards to a phone number
    - Redirect live legs with a transfer to an inline NCCO
    - Sign RS256 JWTs for the agent console's Client SDK

    Without VONAGE_API_KEY / VONAGE_API_SECRET the provider runs simulated:
    calls and redirects are logged and succeed, so the service works locally.
    """

    DIGIT_TIMEOUT_SECONDS = 10

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        application_id: Optional[str] = None,
        private_key_path: str = "./config/private.key",
        from_number: Optional[str] = None,
        api_base_url: str = "http://localhost:8000",
        hold_music_url: Optional[str] = None,
        timeout: float = 10.0,
        token_ttl_seconds: int = 3600,
    ):
        self._api_key = api_key
        self._api_secret = api_secret
        self._app_id = application_id
        self._private_key_path = private_key_path
        self._default_from_number = from_number
        self._api_base_url = api_base_url.rstrip("/")
        self._hold_music_url = hold_music_url
        self._timeout = timeout
        self._token_ttl = token_ttl_seconds

        self._private_key: Optional[str] = None
        self._client: Optional[vonage.Client] = None
        self._voice: Optional[vonage.Voice] = None
        self._initialized = False

    @property
    def name(self) -> str:
        return "vonage"

    @property
    def event_url(self) -> str:
        return f"{self._api_base_url}/api/v1/webhooks/telephony/event"

    @property
    def input_url(self) -> str:
        return f"{self._api_base_url}/api/v1/webhooks/telephony/input"

    def initialize(self) -> None:
        """Create the Vonage client once; missing credentials leave it simulated."""
        if self._initialized:
            return
        self._initialized = True

        if os.path.exists(self._private_key_path):
            with open(self._private_key_path, "r") as f:
                self._private_key = f.read()

        if not self._api_key or not self._api_secret:
            logger.warning("Vonage credentials not configured - calls will be simulated")
            return

        self._client = vonage.Client(
            key=self._api_key,
            secret=self._api_secret,
            application_id=self._app_id,
            private_key=self._private_key,
        )
        self._voice = vonage.Voice(self._client)
        logger.info("Vonage telephony provider initialized")

    async def _call_api(self, description: str, fn, *args):
        """Run a blocking SDK call off the event loop, bounded by the provider timeout."""
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise ProviderCallError(self.name, f"{description} timed out after {self._timeout}s") from e
        except Exception as e:
            logger.error(f"Vonage {description} failed: {e}")
            raise ProviderCallError(self.name, f"{description} failed: {e}") from e

    async def place_call(self, to_number: str, instructions: List[Dict[str, Any]]) -> str:
        self.initialize()
        to_number = self._normalize_number(to_number)
        from_number = self._default_from_number
        if not from_number:
            raise ProviderCallError(self.name, "VONAGE_FROM_NUMBER not set")

        logger.info(f"Initiating call: {from_number} -> {to_number}")
        if self._voice is None:
            call_uuid = str(uuid.uuid4())
            logger.warning(f"Vonage not configured - simulating call with UUID: {call_uuid}")
            return call_uuid

        response = await self._call_api(
            "create call",
            self._voice.create_call,
            {
                "to": [{"type": "phone", "number": to_number.lstrip("+")}],
                "from": {"type": "phone", "number": from_number.lstrip("+")},
                "ncco": instructions,
                "event_url": [self.event_url],
            },
        )
        call_uuid = response.get("uuid") if response else None
        if not call_uuid:
            raise ProviderCallError(self.name, "No UUID returned from Vonage")
        logger.info(f"Call initiated: UUID={call_uuid}")
        return call_uuid

    async def redirect_call(self, telephony_call_id: str, instructions: List[Dict[str, Any]]) -> None:
        self.initialize()
        if self._voice is None:
            logger.warning(f"Vonage not configured - simulating redirect of {telephony_call_id}")
            return

        await self._call_api(
            "transfer call",
            self._voice.update_call,
            telephony_call_id,
            {"action": "transfer", "destination": {"type": "ncco", "ncco": instructions}},
        )
        logger.info(f"Call {telephony_call_id} transferred to a new NCCO")

    def issue_browser_token(self, identity: str) -> str:
        """RS256 JWT for the Vonage Client SDK, subject = the agent's identity."""
        self.initialize()
        if not self._app_id or not self._private_key:
            raise ProviderCallError(self.name, "VONAGE_APP_ID and private key are required for client tokens")

        now = int(time.time())
        claims = {
            "application_id": self._app_id,
            "iat": now,
            "exp": now + self._token_ttl,
            "jti": str(uuid.uuid4()),
            "sub": identity,
            "acl": CLIENT_ACL,
        }
        return jwt.encode(claims, self._private_key, algorithm="RS256")

    def hold_in_room(self, room_id: str, message: Optional[str] = None) -> List[Dict[str, Any]]:
        ncco: List[Dict[str, Any]] = []
        if message:
            ncco.append(self._talk(message))
        conversation: Dict[str, Any] = {
            "action": "conversation",
            "name": room_id,
            "startOnEnter": False,
            "record": True,
            "eventUrl": [self.event_url],
        }
        if self._hold_music_url:
            conversation["musicOnHoldUrl"] = [self._hold_music_url]
        ncco.append(conversation)
        return ncco

    def join_room(self, room_id: str) -> List[Dict[str, Any]]:
        return [
            {
                "action": "conversation",
                "name": room_id,
                "startOnEnter": True,
                "endOnExit": True,
            }
        ]

    def say(self, message: str) -> List[Dict[str, Any]]:
        return [self._talk(message)]

    def collect_digit(self, message: str) -> List[Dict[str, Any]]:
        talk = self._talk(message)
        talk["bargeIn"] = True
        return [
            talk,
            {
                "action": "input",
                "type": ["dtmf"],
                "dtmf": {"maxDigits": 1, "timeOut": self.DIGIT_TIMEOUT_SECONDS},
                "eventUrl": [self.input_url],
            },
        ]

    def connect_to_number(self, number: str, message: Optional[str] = None) -> List[Dict[str, Any]]:
        ncco: List[Dict[str, Any]] = [self._talk(message)] if message else []
        connect: Dict[str, Any] = {
            "action": "connect",
            "endpoint": [{"type": "phone", "number": self._normalize_number(number).lstrip("+")}],
        }
        if self._default_from_number:
            connect["from"] = self._default_from_number.lstrip("+")
        ncco.append(connect)
        return ncco

    @staticmethod
    def _talk(text: str) -> Dict[str, Any]:
        return {"action": "talk", "text": text, "language": "en-US"}

    def _normalize_number(self, number: str) -> str:
        """
        Normalize phone number to E.164 format.

        Args:
            number: Phone number in various formats

        Returns:
            Normalized number
        """
        number = number.replace(" ", "").replace("-", "").replace("(", "").replace(")", "")

        # Assume US/Canada when the country code is missing
        if not number.startswith("+"):
            if len(number) == 10:
                number = "+1" + number
            else:
                number = "+" + number

        return number
