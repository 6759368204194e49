"""Tests for Settings."""

import pytest
from pydantic import ValidationError

from adjutant.config import Settings
from tests.conftest import make_settings


class TestSettings:
    def test_defaults(self, workspace):
        s = make_settings(workspace)
        assert s.max_tool_loops == 25
        assert s.max_retries == 2
        assert s.loop_exact_repeat_threshold == 2
        assert s.loop_same_target_threshold == 3
        assert s.loop_write_target_threshold == 2
        assert s.auto_approve_terminal is False

    def test_credentials_read_from_unprefixed_env(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)  # no stray .env
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-env")
        monkeypatch.setenv("BRAVE_SEARCH_API_KEY", "brave-env")
        monkeypatch.setenv("ADJUTANT_MAX_TOOL_LOOPS", "7")
        s = Settings()
        assert s.anthropic_api_key == "sk-ant-env"
        assert s.brave_search_api_key == "brave-env"
        assert s.max_tool_loops == 7

    @pytest.mark.parametrize("overrides,message", [
        ({"keep_recent_messages": 30, "compaction_message_threshold": 30}, "keep_recent_messages"),
        ({"max_summary_chars": 5000, "compaction_char_threshold": 4000}, "max_summary_chars"),
        ({"retry_backoff_multiplier": 0.5}, "retry_backoff_multiplier"),
        ({"max_retries": -1}, "max_retries"),
    ])
    def test_invalid_limits(self, workspace, overrides, message):
        with pytest.raises(ValidationError, match=message):
            make_settings(workspace, **overrides)
