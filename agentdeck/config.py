"""Settings via pydantic-settings with AGENTDECK_ env prefix.

A single .env file in the working directory can drive the host URL, the
polling cadence and the display limits used by the console front end.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AGENTDECK_", env_file=".env", extra="ignore")

    # Host connection
    host_url: str = "http://localhost:23712"
    request_timeout_connect: float = 10.0  # seconds
    request_timeout_read: float = 30.0  # seconds, not applied to the event stream

    # Session lifecycle
    poll_interval: float = Field(1.5, gt=0)  # seconds between refreshes while starting
    agent_id: str = "opencode"
    project_dir: str = ""
    api_key: str = ""  # forwarded on launch for agents that need their own key

    # Model resolution: "provider/model", used when the session config names none
    preferred_model: str = ""

    # Display
    tool_output_limit: int = 500
    thinking_preview_lines: int = 3

    log_level: str = "info"

    @field_validator("host_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")
