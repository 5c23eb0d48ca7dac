"""Tests for the client facade: lifecycle, space events and user storage"""

import asyncio

import pytest

from rool_sync.auth import MemoryAuthProvider
from rool_sync.client import RoolClient
from rool_sync.errors import ApiError, TransportError
from rool_sync.models import ConnectionState, CurrentUser, SpaceInfo

from tests.helpers import make_snapshot, settle, valid_credentials


@pytest.fixture
def client(config, connector, mock_api):
    provider = MemoryAuthProvider(valid_credentials(), storage={"cached": 1})
    rool = RoolClient(config, provider=provider, connector=connector)
    rool.api = mock_api
    mock_api.get_account.return_value = CurrentUser(
        id="user-1", email="ada@example.com", storage={"theme": "dark"}
    )
    return rool


def _record(client: RoolClient, *kinds: str) -> list:
    seen = []
    for kind in kinds:
        client.subscribe(kind, lambda *args, kind=kind: seen.append((kind, args)))
    return seen


class TestLifecycle:
    """Test initialize, logout and close"""

    @pytest.mark.asyncio
    async def test_initialize_loads_user_and_subscribes(self, client, connector):
        assert await client.initialize() is True

        assert client.current_user.email == "ada@example.com"
        assert client.get_all_user_storage() == {"theme": "dark"}
        assert client.auth.get_storage() == {"theme": "dark"}
        assert connector.calls[0][0] == "wss://rool.test/events/client"
        assert client.connection_state is ConnectionState.CONNECTED
        await client.close()

    @pytest.mark.asyncio
    async def test_initialize_without_credentials(self, config, connector, mock_api):
        client = RoolClient(config, provider=MemoryAuthProvider(), connector=connector)
        client.api = mock_api

        assert await client.initialize() is False
        assert connector.calls == []
        mock_api.get_account.assert_not_awaited()
        await client.close()

    @pytest.mark.asyncio
    async def test_initialize_survives_account_failure(self, client, mock_api):
        mock_api.get_account.side_effect = ApiError("down")
        assert await client.initialize() is True
        assert client.get_all_user_storage() == {"cached": 1}
        await client.close()

    @pytest.mark.asyncio
    async def test_stream_failure_is_reported_not_raised(self, client, connector):
        connector.failures = 1
        errors = _record(client, "error")

        assert await client.initialize() is True

        assert isinstance(errors[0][1][0], TransportError)
        assert client.connection_state is ConnectionState.DISCONNECTED
        await client.close()

    @pytest.mark.asyncio
    async def test_logout_closes_spaces(self, client):
        await client.initialize()
        space = await client.open_space("space-1", conversation_id="conv-1")
        states = _record(client, "auth_state_changed")

        await client.logout()

        assert space.closed
        assert client.open_spaces == []
        assert states == [("auth_state_changed", (False,))]
        assert client.connection_state is ConnectionState.DISCONNECTED
        await client.close()

    @pytest.mark.asyncio
    async def test_close_waits_for_pending_storage_sync(self, client, mock_api):
        await client.initialize()
        release = asyncio.Event()

        async def hang(*args):
            await release.wait()

        mock_api.set_user_storage.side_effect = hang

        before = set(client._background)
        client.set_user_storage("theme", "light")
        pending = list(client._background - before)
        await settle()

        await client.close()

        assert pending
        assert all(task.done() for task in pending)
        assert all(task.cancelled() for task in pending)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, client):
        await client.initialize()
        await client.close()
        await client.close()
        assert client.context.closed


class TestSpaces:
    """Test opening, creating and deleting spaces"""

    @pytest.mark.asyncio
    async def test_open_space_connects_space_stream(self, client, connector, mock_api):
        space = await client.open_space("space-1", conversation_id="conv-1")

        urls = [url for url, _ in connector.calls]
        assert "wss://rool.test/events/spaces/space-1?conversationId=conv-1" in urls
        assert client.open_spaces == [space]
        assert space.connection_state is ConnectionState.CONNECTED

        await space.close()
        assert client.open_spaces == []
        await client.close()

    @pytest.mark.asyncio
    async def test_open_space_failure_raises(self, client, connector):
        connector.failures = 2
        with pytest.raises(TransportError):
            await client.open_space("space-1")
        assert client.open_spaces == []
        await client.close()

    @pytest.mark.asyncio
    async def test_create_space(self, client, mock_api):
        mock_api.create_space.return_value = make_snapshot(space_id="new-space")
        space = await client.create_space("Roadmap")
        mock_api.create_space.assert_awaited_once_with("Roadmap")
        assert space.id == "new-space"
        await client.close()

    @pytest.mark.asyncio
    async def test_delete_space(self, client, mock_api):
        await client.delete_space("space-1")
        mock_api.delete_space.assert_awaited_once_with("space-1")
        await client.close()


class TestClientEvents:
    """Test the mapping from client-stream events to notifications"""

    @pytest.mark.asyncio
    async def test_space_lifecycle_events(self, client, connector):
        await client.initialize()
        seen = _record(client, "space_added", "space_removed", "space_renamed")
        stream = connector.last

        stream.push({"type": "space_created", "spaceId": "s1", "name": "One"})
        stream.push({"type": "space_renamed", "spaceId": "s1", "name": "Uno"})
        stream.push({"type": "space_access_changed", "spaceId": "s2", "name": "Two", "role": "editor"})
        stream.push({"type": "space_access_changed", "spaceId": "s2", "role": "none"})
        stream.push({"type": "space_deleted", "spaceId": "s1"})
        await settle()

        assert [kind for kind, _ in seen] == [
            "space_added",
            "space_renamed",
            "space_added",
            "space_removed",
            "space_removed",
        ]
        created = seen[0][1][0]
        assert isinstance(created, SpaceInfo)
        assert (created.id, created.name, created.role) == ("s1", "One", "owner")
        assert created.created_at
        assert seen[1][1] == ("s1", "Uno")
        assert seen[2][1][0].role == "editor"
        assert seen[3][1] == ("s2",)
        assert seen[4][1] == ("s1",)
        await client.close()

    @pytest.mark.asyncio
    async def test_remote_storage_change(self, client, connector):
        await client.initialize()
        seen = _record(client, "user_storage_changed")

        connector.last.push({"type": "user_storage_changed", "key": "theme", "value": "dark"})
        connector.last.push({"type": "user_storage_changed", "key": "theme", "value": "light"})
        await settle()

        assert len(seen) == 1
        change = seen[0][1][0]
        assert (change.key, change.value, change.source) == ("theme", "light", "remote")
        assert client.get_user_storage("theme") == "light"
        assert client.auth.get_storage() == {"theme": "light"}
        await client.close()


class TestUserStorage:
    """Test optimistic user storage writes"""

    @pytest.mark.asyncio
    async def test_set_is_local_first_then_synced(self, client, mock_api):
        await client.initialize()
        seen = _record(client, "user_storage_changed")

        client.set_user_storage("layout", {"cols": 2})

        assert client.get_user_storage("layout") == {"cols": 2}
        assert seen[0][1][0].source == "local"
        await settle()
        mock_api.set_user_storage.assert_awaited_once_with("layout", {"cols": 2})
        await client.close()

    @pytest.mark.asyncio
    async def test_none_deletes_key(self, client):
        await client.initialize()
        client.set_user_storage("theme", None)
        assert "theme" not in client.get_all_user_storage()
        await settle()
        await client.close()

    @pytest.mark.asyncio
    async def test_sync_failure_is_reported(self, client, mock_api):
        await client.initialize()
        mock_api.set_user_storage.side_effect = ApiError("nope")
        errors = _record(client, "error")

        client.set_user_storage("theme", "light")
        await settle()

        assert isinstance(errors[0][1][0], ApiError)
        assert client.get_user_storage("theme") == "light"
        await client.close()

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, client):
        await client.initialize()
        client.set_user_storage("layout", {"cols": 2})
        client.get_user_storage("layout")["cols"] = 5
        assert client.get_user_storage("layout") == {"cols": 2}
        await settle()
        await client.close()
