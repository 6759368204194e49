"""Settings via pydantic-settings with ADJUTANT_ env prefix.

Credential fields use validation_alias to read the same unprefixed env
vars (ANTHROPIC_API_KEY, BRAVE_SEARCH_API_KEY) other tooling already
exports, so a single .env file drives everything.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ADJUTANT_", env_file=".env")

    log_level: str = "info"

    # Runtime
    host: str = "127.0.0.1"
    port: int = 8400
    workspace_dir: str = "/tmp/adjutant-workspace"
    system_prompt: str = ""

    # LLM gateway
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    api_base_url: str = "https://api.anthropic.com"
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 8192
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    stream_responses: bool = True

    # Loop control
    max_tool_loops: int = 25
    max_history_messages: int = 50

    # Retry policy for transient gateway errors
    max_retries: int = 2
    retry_delay: float = 1.0  # seconds before the first retry
    retry_backoff_multiplier: float = 2.0

    # Truncation (characters)
    max_tool_result_chars: int = 10000
    max_file_content_chars: int = 15000
    max_total_context_chars: int = 50000

    # Tool execution
    tool_timeout: float = 60.0  # seconds
    allow_read_outside_workspace: bool = False

    # Approval: per-classification auto-approve flags
    auto_approve_terminal: bool = False
    auto_approve_dangerous: bool = False

    # Compaction
    compaction_enabled: bool = True
    compaction_message_threshold: int = 30
    compaction_char_threshold: int = 40000
    keep_recent_messages: int = 6
    max_summary_chars: int = 2000

    # Loop detection
    loop_history_size: int = 15
    loop_exact_repeat_threshold: int = 2
    loop_same_target_threshold: int = 3
    loop_write_target_threshold: int = 2

    # Web tools
    brave_search_api_key: str = Field("", validation_alias="BRAVE_SEARCH_API_KEY")
    web_search_daily_limit: int = 100
    web_fetch_max_chars: int = 10000

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.keep_recent_messages >= self.compaction_message_threshold:
            raise ValueError(
                f"keep_recent_messages ({self.keep_recent_messages}) must be < "
                f"compaction_message_threshold ({self.compaction_message_threshold})"
            )
        if self.max_summary_chars >= self.compaction_char_threshold:
            raise ValueError(
                f"max_summary_chars ({self.max_summary_chars}) must be < "
                f"compaction_char_threshold ({self.compaction_char_threshold})"
            )
        if self.retry_backoff_multiplier < 1:
            raise ValueError("retry_backoff_multiplier must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        return self
