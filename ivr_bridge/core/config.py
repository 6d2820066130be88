"""
Configuration Management
Loads settings from environment variables and YAML files
"""
import yaml
import os
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class TransferMode(str, Enum):
    """How an in-call transfer request is routed"""
    DIRECT = "direct"  # Digit picks a specific agent
    QUEUE = "queue"    # Everyone goes to the shared agent queue


class Settings(BaseSettings):
    """Application settings loaded from environment"""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # API Settings
    api_prefix: str = "/api/v1"
    cors_origins: list[str] = ["http://localhost:3000"]
    api_base_url: str = "http://localhost:8000"

    # Storage
    database_url: str = "sqlite:///./ivr_bridge.db"

    # Redis / notifications
    redis_url: Optional[str] = None
    notifications_backend: str = "websocket"  # websocket | redis
    notifications_channel: str = "ivr:agent-events"

    # Transfer and queue behaviour
    transfer_mode: TransferMode = TransferMode.QUEUE
    queue_wait_ceiling_seconds: int = 120
    dedup_window_seconds: int = 30
    inbound_priority: int = 1
    transfer_priority: int = 2
    room_prefix: str = "queue-"
    queue_number: Optional[str] = None
    provider_timeout_seconds: float = 10.0

    # AI call provider (Vapi)
    vapi_api_key: Optional[str] = None
    vapi_base_url: str = "https://api.vapi.ai"
    vapi_phone_number_id: Optional[str] = None
    vapi_webhook_url: Optional[str] = None

    # Telephony provider (Vonage)
    vonage_api_key: Optional[str] = None
    vonage_api_secret: Optional[str] = None
    vonage_app_id: Optional[str] = None
    vonage_private_key_path: str = "./config/private.key"
    vonage_from_number: Optional[str] = None
    vonage_token_ttl_seconds: int = 3600


@lru_cache
def get_settings() -> Settings:
    return Settings()


class ConfigManager:
    """Manages loading and merging configuration from multiple sources"""

    def __init__(self, env: str = "development", config_dir: Optional[Path] = None):
        self.env = env
        self.config_dir = config_dir or Path(__file__).parent.parent.parent / "config"
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration files in order of precedence"""
        default_path = self.config_dir / "default.yaml"
        if default_path.exists():
            self._config = self._load_yaml(default_path)

        env_path = self.config_dir / f"{self.env}.yaml"
        if env_path.exists():
            env_config = self._load_yaml(env_path)
            self._deep_merge(self._config, env_config)

        self._substitute_env_vars(self._config)

    def _load_yaml(self, path: Path) -> Dict:
        """Load YAML file"""
        with open(path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _substitute_env_vars(self, config: Dict) -> None:
        """Replace ${VAR_NAME} with environment variable values"""
        for key, value in config.items():
            if isinstance(value, dict):
                self._substitute_env_vars(value)
            elif isinstance(value, str) and value.startswith("${") and value.endswith("}"):
                env_var = value[2:-1]
                config[key] = os.getenv(env_var, value)

    def _deep_merge(self, base: Dict, override: Dict) -> None:
        """Recursively merge override into base"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation
        Example: config.get("messages.hold") -> "Please hold..."
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def message(self, name: str) -> str:
        """Spoken prompt by name; falls back to the built-in wording."""
        return self.get(f"messages.{name}") or DEFAULT_MESSAGES.get(name, "")


DEFAULT_MESSAGES: Dict[str, str] = {
    "hold": "Please hold while we connect you to an agent. An agent will be with you shortly.",
    "already_in_progress": "Please hold, your transfer is already in progress.",
    "no_agent": "Sorry, no agent is available for this option at the moment.",
    "call_not_found": "Sorry, we could not transfer this call. Please stay on the line.",
    "transferring": "Transferring you to an agent. Please hold.",
    "queue_transfer": "Call is being transferred to agent queue.",
    "caller_waiting": "Thank you for calling. Please hold while we connect you to the next available agent.",
    "agent_not_assigned": "This call is no longer assigned to you.",
    "caller_not_connected": "The caller is not connected yet. Please try again in a moment.",
    "error": "Sorry, something went wrong. Please stay on the line.",
    "invalid_key": "Sorry, that is not a valid option. Please press the key for the agent you want.",
}
