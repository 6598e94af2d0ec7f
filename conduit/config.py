"""Settings via pydantic-settings with CONDUIT_ env prefix.

Provider credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) the provider SDKs use,
so a single .env file drives every process.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CONDUIT_", env_file=".env")

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    assistant_name: str = "Conduit"
    system_prompt: str = (
        "You are a helpful assistant. Use the available tools to look up "
        "data before answering questions that depend on it."
    )

    # Provider
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    model: str = "claude-sonnet-4-5-20250514"
    summary_model: str = "claude-haiku-4-5-20251001"
    max_tokens: int = 4096
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Pipeline
    max_phases: int = 10  # Phase ceiling per round
    tool_timeout: float = 30.0  # seconds, enforced by the executor
    recover_malformed_input: bool = True  # re-request when streamed tool JSON is unparseable

    # Remote tool back end (JSON-RPC); empty disables it
    tool_server_url: str = ""

    # Context budget (units ~ tokens)
    context_window: int = 200_000
    reserved_system_prompt: int = 1000
    reserved_response: int = 4000
    reserved_buffer: int = 1000
    compaction_trigger_ratio: float = 0.8
    summary_chunk_size: int = 20
    summary_max_units: int = 300
    summary_max_units_plain: int = 200

    # Sessions
    session_ttl: int = 1800  # seconds of idle before history expires
    max_sessions: int = 100
    max_history_turns: int = 50

    @model_validator(mode="after")
    def _validate_budget(self) -> "Settings":
        reserved = self.reserved_system_prompt + self.reserved_response + self.reserved_buffer
        if reserved >= self.context_window:
            raise ValueError(
                f"Reserved units ({reserved}) must be < context_window "
                f"({self.context_window})"
            )
        if not 0 < self.compaction_trigger_ratio <= 1:
            raise ValueError("compaction_trigger_ratio must be in (0, 1]")
        if self.max_phases < 1:
            raise ValueError("max_phases must be >= 1")
        if self.summary_chunk_size < 2:
            raise ValueError("summary_chunk_size must be >= 2")
        return self

    @property
    def available_units(self) -> int:
        """Context window minus the reserved system/response/buffer units."""
        return self.context_window - (
            self.reserved_system_prompt + self.reserved_response + self.reserved_buffer
        )
