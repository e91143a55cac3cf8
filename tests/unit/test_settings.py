# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for settings loading and run config coercion."""

import asyncio

import pytest
from pydantic import ValidationError

from graphloom.config.settings import DEFAULT_RECURSION_LIMIT, Settings, load_settings
from graphloom.framework.config import GraphConfig, RunConfig


class TestSettings:
    """Tests for Settings and load_settings."""

    def test_defaults(self):
        settings = load_settings()
        assert settings.recursion_limit == DEFAULT_RECURSION_LIMIT == 25
        assert settings.step_timeout is None
        assert settings.log_level == "WARNING"
        assert settings.checkpoint_db_path.name == "checkpoints.db"

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("GRAPHLOOM_RECURSION_LIMIT", "40")
        monkeypatch.setenv("GRAPHLOOM_LOG_LEVEL", "debug")
        settings = load_settings()
        assert settings.recursion_limit == 40
        assert settings.log_level == "DEBUG"

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("recursion_limit: 10\nstep_timeout: 2.5\n")
        settings = load_settings(path)
        assert settings.recursion_limit == 10
        assert settings.step_timeout == 2.5

    def test_environment_beats_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("recursion_limit: 10\n")
        monkeypatch.setenv("GRAPHLOOM_RECURSION_LIMIT", "12")
        assert load_settings(path).recursion_limit == 12

    def test_yaml_must_be_mapping(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ValueError, match="mapping"):
            load_settings(path)

    def test_invalid_values(self):
        with pytest.raises(ValidationError):
            Settings(log_level="LOUD")
        with pytest.raises(ValidationError):
            Settings(recursion_limit=0)


class TestGraphConfig:
    """Tests for GraphConfig defaults."""

    def test_limits_from_settings(self):
        config = GraphConfig.create(settings=Settings(recursion_limit=9, step_timeout=3.0))
        assert config.execution.recursion_limit == 9
        assert config.execution.step_timeout == 3.0
        assert config.checkpoint.checkpointer is None

    def test_explicit_limits_win(self):
        config = GraphConfig.create(recursion_limit=4, settings=Settings(recursion_limit=9))
        assert config.execution.recursion_limit == 4

    def test_zero_limit_is_kept(self):
        config = GraphConfig.create(recursion_limit=0, settings=Settings(recursion_limit=9))
        assert config.execution.recursion_limit == 0

    def test_interrupts_recorded(self):
        config = GraphConfig.create(interrupt_before=["a"], interrupt_after=("b",))
        assert config.interrupt.interrupt_before == ("a",)
        assert config.interrupt.interrupt_after == ("b",)


class TestRunConfig:
    """Tests for RunConfig.coerce."""

    def test_none(self):
        assert RunConfig.coerce(None) == RunConfig()

    def test_flat_dict(self):
        config = RunConfig.coerce({"thread_id": 7, "recursion_limit": 3})
        assert config.thread_id == "7"
        assert config.recursion_limit == 3

    def test_configurable_dict(self):
        config = RunConfig.coerce({"configurable": {"thread_id": "t", "checkpoint_id": "000001"}})
        assert config.to_dict() == {"thread_id": "t", "checkpoint_id": "000001"}

    def test_negative_recursion_limit(self):
        with pytest.raises(ValueError, match="recursion_limit"):
            RunConfig.coerce({"recursion_limit": -1})
        assert RunConfig.coerce({"recursion_limit": 0}).recursion_limit == 0

    def test_unknown_keys(self):
        with pytest.raises(ValueError, match="threadid"):
            RunConfig.coerce({"threadid": "t"})

    def test_passthrough_and_with_checkpoint(self):
        event = asyncio.Event()
        config = RunConfig(thread_id="t", cancel_event=event)
        assert RunConfig.coerce(config) is config
        branched = config.with_checkpoint("000004")
        assert branched.checkpoint_id == "000004"
        assert branched.cancel_event is event
