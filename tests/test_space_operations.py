"""Tests for optimistic local mutations and queries on a space"""

import asyncio

import pytest

from rool_sync.errors import ApiError, OperationFailed, TransportError, ValidationError
from rool_sync.models import ChangeSource
from rool_sync.space import ID_ALPHABET, OBJECT_ID_PATTERN, Space, generate_entity_id

from tests.helpers import make_entry, make_snapshot


def _record_all(space: Space) -> list:
    seen = []
    for kind in (
        "object_created",
        "object_updated",
        "object_deleted",
        "linked",
        "unlinked",
        "metadata_updated",
        "conversation_updated",
        "conversations_changed",
        "conversation_id_changed",
        "reset",
        "sync_error",
    ):
        space.subscribe(kind, lambda payload, kind=kind: seen.append((kind, payload)))
    return seen


class TestIdentifiers:
    """Test generated entity ids"""

    def test_generated_id_shape(self):
        for _ in range(50):
            entity_id = generate_entity_id()
            assert len(entity_id) == 6
            assert all(char in ID_ALPHABET for char in entity_id)
            assert OBJECT_ID_PATTERN.match(entity_id)

    def test_conversation_id_defaults_to_generated(self, mock_api):
        space = Space(mock_api, make_snapshot())
        assert len(space.conversation_id) == 6


class TestObjectMutations:
    """Test create, update and delete"""

    @pytest.mark.asyncio
    async def test_create_object_is_visible_before_server_answers(self, space, mock_api):
        seen = _record_all(space)

        async def _answer(*args):
            assert space.get_object("a") == {"id": "a", "title": "x"}
            return "ok"

        mock_api.create_object.side_effect = _answer
        result = await space.create_object({"id": "a", "title": "x"})

        assert result.object == {"id": "a", "title": "x"}
        assert result.message == "ok"
        assert seen[0][0] == "object_created"
        assert seen[0][1].source is ChangeSource.LOCAL_USER
        mock_api.create_object.assert_awaited_once_with(
            "space-1", {"id": "a", "title": "x"}, "conv-1", None, None
        )

    @pytest.mark.asyncio
    async def test_create_object_generates_id(self, space):
        result = await space.create_object({"title": "x"})
        assert OBJECT_ID_PATTERN.match(result.object["id"])
        assert space.get_object_ids() == [result.object["id"]]

    @pytest.mark.asyncio
    async def test_invalid_id_is_rejected_without_request(self, space, mock_api):
        with pytest.raises(ValidationError):
            await space.create_object({"id": "bad id!"})
        mock_api.create_object.assert_not_awaited()
        assert space.get_object_ids() == []

    @pytest.mark.asyncio
    async def test_duplicate_id_is_rejected(self, space):
        await space.create_object({"id": "a"})
        with pytest.raises(ValidationError):
            await space.create_object({"id": "a"})

    @pytest.mark.asyncio
    async def test_update_object_merges_and_deletes_fields(self, mock_api):
        space = Space(mock_api, make_snapshot(objects={"a": make_entry("a", title="t", body="b")}))
        seen = _record_all(space)

        result = await space.update_object("a", {"title": "T", "body": None})

        assert result.object == {"id": "a", "title": "T"}
        assert seen[0][0] == "object_updated"
        assert seen[0][1].object == {"id": "a", "title": "T"}

    @pytest.mark.asyncio
    async def test_update_object_rejects_id_change(self, mock_api):
        space = Space(mock_api, make_snapshot(objects={"a": make_entry("a")}))
        with pytest.raises(ValidationError):
            await space.update_object("a", {"id": "b"})
        mock_api.update_object.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_missing_object_is_rejected(self, space):
        with pytest.raises(ValidationError):
            await space.update_object("nope", {"title": "x"})

    @pytest.mark.asyncio
    async def test_create_link_delete_notification_order(self, space):
        seen = _record_all(space)

        await space.create_object({"id": "a"})
        await space.create_object({"id": "b"})
        await space.link("a", "refs", "b")
        await space.delete_objects(["a"])

        assert [(kind, getattr(event, "object_id", None) or getattr(event, "source_id", None)) for kind, event in seen] == [
            ("object_created", "a"),
            ("object_created", "b"),
            ("linked", "a"),
            ("unlinked", "a"),
            ("object_deleted", "a"),
        ]
        assert space.get_object("a") is None
        assert space.get_object("b") == {"id": "b"}

    @pytest.mark.asyncio
    async def test_delete_leaves_inbound_links_dangling(self, mock_api):
        objects = {"a": make_entry("a", links={"refs": ["b"]}), "b": make_entry("b")}
        space = Space(mock_api, make_snapshot(objects=objects))

        await space.delete_objects(["b"])

        assert space.get_children_including_orphans("a") == ["b"]
        assert space.get_children("a") == []

    @pytest.mark.asyncio
    async def test_delete_of_nothing_skips_request(self, space, mock_api):
        await space.delete_objects([])
        mock_api.delete_objects.assert_not_awaited()


class TestFailureRecovery:
    """Test that failed mutations resync before raising"""

    @pytest.mark.asyncio
    async def test_failed_create_resyncs_then_raises(self, space, mock_api):
        mock_api.create_object.side_effect = ApiError("quota exceeded")
        seen = _record_all(space)

        with pytest.raises(OperationFailed) as excinfo:
            await space.create_object({"id": "a"})

        assert excinfo.value.operation == "create_object"
        assert isinstance(excinfo.value.__cause__, ApiError)
        mock_api.get_space.assert_awaited_once_with("space-1")
        assert space.get_object("a") is None
        kinds = [kind for kind, _ in seen]
        assert kinds == ["object_created", "sync_error", "reset"]
        assert seen[-1][1].source is ChangeSource.SYSTEM

    @pytest.mark.asyncio
    async def test_failed_resync_still_raises_operation_failed(self, space, mock_api):
        mock_api.link.side_effect = TransportError("offline")
        mock_api.get_space.side_effect = TransportError("still offline")
        await space.create_object({"id": "a"})
        seen = _record_all(space)

        with pytest.raises(OperationFailed):
            await space.link("a", "refs", "b")

        assert [kind for kind, _ in seen] == ["linked", "sync_error"]

    @pytest.mark.asyncio
    async def test_undecodable_snapshot_still_raises_operation_failed(self, space, mock_api):
        mock_api.create_object.side_effect = ApiError("boom")
        mock_api.get_space.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
        seen = _record_all(space)

        with pytest.raises(OperationFailed) as excinfo:
            await space.create_object({"id": "a"})

        assert isinstance(excinfo.value.__cause__, ApiError)
        assert [kind for kind, _ in seen] == ["object_created", "sync_error"]
        assert space.get_object("a") == {"id": "a"}

    @pytest.mark.asyncio
    async def test_rename_failure_restores_name(self, space, mock_api):
        mock_api.rename_space.side_effect = ApiError("forbidden")
        with pytest.raises(OperationFailed):
            await space.rename("New name")
        assert space.name == "Test Space"

    @pytest.mark.asyncio
    async def test_system_reset_clears_checkpoint_history(self, space, mock_api):
        mock_api.set_space_meta.side_effect = ApiError("nope")
        with pytest.raises(OperationFailed):
            await space.set_metadata("k", 1)
        # the clear runs as a background task scheduled by the reset handler
        for _ in range(5):
            if mock_api.clear_checkpoint_history.await_count:
                break
            await asyncio.sleep(0)
        mock_api.clear_checkpoint_history.assert_awaited_once_with("space-1", "conv-1")


class TestLinks:
    """Test link and unlink"""

    @pytest.mark.asyncio
    async def test_link_requires_source(self, space):
        with pytest.raises(ValidationError):
            await space.link("missing", "refs", "b")

    @pytest.mark.asyncio
    async def test_relinking_existing_target_emits_nothing(self, mock_api):
        space = Space(mock_api, make_snapshot(objects={"a": make_entry("a", links={"refs": ["b"]})}))
        seen = _record_all(space)
        await space.link("a", "refs", "b")
        assert seen == []
        mock_api.link.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unlink_single_target(self, mock_api):
        space = Space(mock_api, make_snapshot(objects={"a": make_entry("a", links={"refs": ["b", "c"]})}))
        assert await space.unlink("a", "refs", "b") is True
        assert space.get_children_including_orphans("a") == ["c"]

    @pytest.mark.asyncio
    async def test_unlink_whole_relation_and_all(self, mock_api):
        links = {"refs": ["b", "c"], "tags": ["d"]}
        space = Space(mock_api, make_snapshot(objects={"a": make_entry("a", links=links)}))
        seen = _record_all(space)

        assert await space.unlink("a", "refs") is True
        assert space.get_children_including_orphans("a") == ["d"]
        assert await space.unlink("a") is True
        assert space.get_children_including_orphans("a") == []
        assert [event.target_id for kind, event in seen if kind == "unlinked"] == ["b", "c", "d"]

    @pytest.mark.asyncio
    async def test_unlink_target_without_relation_is_rejected(self, mock_api):
        space = Space(mock_api, make_snapshot(objects={"a": make_entry("a")}))
        with pytest.raises(ValidationError):
            await space.unlink("a", target_id="b")


class TestQueries:
    """Test local reads"""

    def _populated(self, mock_api) -> Space:
        objects = {
            "old": make_entry("old", modified_at=1, kind="note", links={"refs": ["new"]}),
            "new": make_entry("new", modified_at=3, kind="note"),
            "task": make_entry("task", modified_at=2, kind="task", links={"refs": ["new", "ghost"]}),
        }
        return Space(mock_api, make_snapshot(objects=objects))

    def test_object_ids_sorted_by_modification(self, mock_api):
        space = self._populated(mock_api)
        assert space.get_object_ids() == ["new", "task", "old"]
        assert space.get_object_ids(order="asc", limit=2) == ["old", "task"]

    @pytest.mark.asyncio
    async def test_find_objects_matches_locally(self, mock_api):
        space = self._populated(mock_api)
        result = await space.find_objects(where={"kind": "note"})
        assert [obj["id"] for obj in result.objects] == ["new", "old"]
        mock_api.find_objects.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_find_objects_with_prompt_asks_server(self, mock_api):
        space = self._populated(mock_api)
        mock_api.find_objects.return_value = ([{"id": "task"}], "1 match")
        result = await space.find_objects(prompt="open tasks")
        assert result.objects == [{"id": "task"}]
        assert result.message == "1 match"

    def test_parents_and_children(self, mock_api):
        space = self._populated(mock_api)
        assert [obj["id"] for obj in space.get_parents("new")] == ["task", "old"]
        assert [obj["id"] for obj in space.get_children("task")] == ["new"]
        assert space.get_children_including_orphans("task", "refs") == ["new", "ghost"]

    def test_reads_return_copies(self, mock_api):
        space = self._populated(mock_api)
        space.get_object("new")["kind"] = "changed"
        assert space.get_object("new")["kind"] == "note"

    def test_stat(self, mock_api):
        space = self._populated(mock_api)
        stat = space.stat("task")
        assert stat.modified_at == 2
        assert stat.modified_by == "user-1"
        assert space.stat("ghost") is None


class TestConversationsAndMetadata:
    """Test conversation-scoped state"""

    @pytest.mark.asyncio
    async def test_set_metadata(self, space, mock_api):
        seen = _record_all(space)
        await space.set_metadata("title", "Plan")
        assert space.get_all_metadata() == {"title": "Plan"}
        assert seen[0][1].metadata == {"title": "Plan"}
        mock_api.set_space_meta.assert_awaited_once_with("space-1", {"title": "Plan"}, "conv-1")

    @pytest.mark.asyncio
    async def test_rename_conversation_creates_then_renames(self, space):
        seen = _record_all(space)
        await space.rename_conversation("c2", "First")
        await space.rename_conversation("c2", "Second")
        changes = [event for kind, event in seen if kind == "conversations_changed"]
        assert [(c.action, c.name) for c in changes] == [("created", "First"), ("renamed", "Second")]
        assert "c2" in space.get_conversation_ids()

    @pytest.mark.asyncio
    async def test_system_instruction(self, space):
        await space.set_system_instruction("Be brief")
        assert space.get_system_instruction() == "Be brief"
        await space.set_system_instruction(None)
        assert space.get_system_instruction() is None

    def test_switching_conversation_emits(self, space):
        seen = _record_all(space)
        space.conversation_id = "conv-2"
        space.conversation_id = "conv-2"
        assert len(seen) == 1
        assert seen[0][1].previous_conversation_id == "conv-1"
        assert seen[0][1].new_conversation_id == "conv-2"

    @pytest.mark.asyncio
    async def test_prompt_returns_surviving_objects(self, mock_api):
        space = Space(mock_api, make_snapshot(objects={"a": make_entry("a", title="t")}))
        mock_api.prompt.return_value = ("Done", ["a", "deleted-meanwhile"])
        result = await space.prompt("summarize")
        assert result.message == "Done"
        assert result.objects == [{"id": "a", "title": "t"}]


class TestJsonLd:
    """Test export and import through a space"""

    @pytest.mark.asyncio
    async def test_import_creates_objects_then_links(self, space, mock_api):
        document = {
            "@graph": [
                {"id": "a", "title": "A", "refs": ["b"]},
                {"id": "b", "title": "B"},
            ]
        }
        await space.import_jsonld(document)

        assert space.get_object("a") == {"id": "a", "title": "A"}
        assert space.get_children_including_orphans("a", "refs") == ["b"]
        assert mock_api.create_object.await_count == 2
        assert mock_api.link.await_count == 1

    @pytest.mark.asyncio
    async def test_import_into_non_empty_space_is_rejected(self, mock_api):
        space = Space(mock_api, make_snapshot(objects={"a": make_entry("a")}))
        with pytest.raises(ValidationError):
            await space.import_jsonld({"@graph": []})
