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

"""Shared pytest fixtures and configuration."""

import os

import pytest

from graphloom.framework.checkpoint import MemoryCheckpointer


@pytest.fixture(autouse=True)
def isolate_settings(monkeypatch, tmp_path):
    """Isolate tests from GRAPHLOOM_* variables and ~/.graphloom/settings.yaml."""
    for name in list(os.environ):
        if name.startswith("GRAPHLOOM_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(
        "graphloom.config.settings.DEFAULT_SETTINGS_FILE",
        tmp_path / "no-such-settings.yaml",
    )


@pytest.fixture
def memory_checkpointer():
    """Fresh in-memory checkpointer."""
    return MemoryCheckpointer()
