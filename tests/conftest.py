"""Shared fixtures for rool_sync tests."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from rool_sync.api import GraphQLApi
from rool_sync.auth import AuthSession, MemoryAuthProvider
from rool_sync.config import RoolConfig
from rool_sync.context import SessionContext
from rool_sync.space import Space

from tests.helpers import FakeConnector, make_snapshot, valid_credentials


@pytest.fixture
def config(tmp_path: Path) -> RoolConfig:
    """Config rooted in tmp_path so nothing touches ~/.rool."""
    return RoolConfig(config_dir=tmp_path, base_url="https://rool.test")


@pytest.fixture
def mock_api() -> AsyncMock:
    """GraphQLApi mock whose server accepts every mutation."""
    api = AsyncMock(spec=GraphQLApi)
    api.create_object.return_value = "created"
    api.update_object.return_value = "updated"
    api.get_space.return_value = make_snapshot(version=0)
    api.checkpoint_status.return_value = (False, False)
    return api


@pytest.fixture
def space(mock_api: AsyncMock) -> Space:
    return Space(mock_api, make_snapshot(version=0), conversation_id="conv-1")


@pytest.fixture
def memory_provider() -> MemoryAuthProvider:
    return MemoryAuthProvider(credentials=valid_credentials())


@pytest.fixture
def auth_session(config: RoolConfig, memory_provider: MemoryAuthProvider) -> AuthSession:
    return AuthSession(SessionContext(config), memory_provider)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
