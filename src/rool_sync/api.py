"""GraphQL request layer.

One async method per remote operation. Every request carries the session's
bearer token; bodies above ``COMPRESSION_THRESHOLD`` bytes are gzipped.
"""

from __future__ import annotations

import gzip
import json
import logging
from typing import Any, Optional

import httpx

from rool_sync.auth import AuthSession
from rool_sync.context import SessionContext
from rool_sync.errors import ApiError, NotAuthenticated, TransportError
from rool_sync.models import CurrentUser, SpaceInfo, SpaceSnapshot

logger = logging.getLogger(__name__)

COMPRESSION_THRESHOLD = 2048

_SPACE_INFO_FIELDS = "id name role ownerId size createdAt updatedAt linkAccess"


def _decode_document(raw: Any) -> dict[str, Any]:
    """Space documents arrive as JSON strings."""
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except ValueError as exc:
        raise ApiError(f"Space document is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ApiError("Space document is not an object")
    data.setdefault("version", 0)
    data.setdefault("objects", {})
    data.setdefault("meta", {})
    data.setdefault("conversations", {})
    return data


class GraphQLApi:
    """Typed wrapper over the GraphQL endpoint."""

    def __init__(self, context: SessionContext, auth: AuthSession):
        self.context = context
        self.auth = auth

    @property
    def graphql_url(self) -> str:
        return self.context.config.graphql_url

    async def request(self, query: str, variables: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """POST one query and return its ``data``.

        Raises:
            NotAuthenticated: no usable token.
            TransportError: network failure or a 5xx answer.
            ApiError: any other non-2xx answer, or a GraphQL ``errors`` list.
        """
        token = await self.auth.get_token()
        if not token:
            raise NotAuthenticated("Not authenticated")

        body = json.dumps({"query": query, "variables": variables or {}}).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }
        if self.context.timezone:
            headers["X-Timezone"] = self.context.timezone
        if len(body) > COMPRESSION_THRESHOLD:
            body = gzip.compress(body)
            headers["Content-Encoding"] = "gzip"

        client = self.context.get_http_client()
        try:
            response = await client.post(self.graphql_url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            raise TransportError(f"GraphQL request failed: {exc}") from exc

        if response.status_code >= 500:
            raise TransportError(f"GraphQL request failed: {response.status_code}")
        if not response.is_success:
            raise ApiError(f"GraphQL request failed: {response.status_code} {response.reason_phrase}")

        try:
            result = response.json()
        except ValueError as exc:
            raise ApiError("GraphQL response is not JSON") from exc

        errors = result.get("errors")
        if errors:
            first = errors[0]
            raise ApiError(first.get("message", "GraphQL error"), first.get("extensions"))
        data = result.get("data")
        if data is None:
            raise ApiError("GraphQL response missing data")
        return data

    # -- Spaces ---------------------------------------------------------------

    async def list_spaces(self) -> list[SpaceInfo]:
        query = f"query ListSpaces {{ listSpaces {{ {_SPACE_INFO_FIELDS} }} }}"
        data = await self.request(query)
        return [SpaceInfo.from_dict(item) for item in data["listSpaces"]]

    async def get_space(self, space_id: str) -> SpaceSnapshot:
        query = """
        query GetSpace($id: String!) {
          getSpace(id: $id) { data name role userId linkAccess }
        }
        """
        result = (await self.request(query, {"id": space_id})).get("getSpace")
        if not isinstance(result, dict) or "data" not in result:
            raise ApiError(f"Space {space_id} not found or has no document")
        return SpaceSnapshot(
            id=space_id,
            name=result.get("name") or space_id,
            role=result.get("role") or "viewer",
            user_id=result.get("userId") or "",
            data=_decode_document(result["data"]),
            link_access=result.get("linkAccess") or "none",
        )

    async def create_space(self, name: str) -> SpaceSnapshot:
        mutation = """
        mutation CreateSpace($name: String!) {
          createSpace(name: $name) { spaceId data name role userId }
        }
        """
        result = (await self.request(mutation, {"name": name})).get("createSpace")
        if not isinstance(result, dict) or "data" not in result or "spaceId" not in result:
            raise ApiError("createSpace returned no space")
        return SpaceSnapshot(
            id=result["spaceId"],
            name=result.get("name") or name,
            role=result.get("role") or "owner",
            user_id=result.get("userId") or "",
            data=_decode_document(result["data"]),
        )

    async def delete_space(self, space_id: str) -> None:
        await self.request("mutation DeleteSpace($id: String!) { deleteSpace(id: $id) }", {"id": space_id})

    async def rename_space(self, space_id: str, name: str) -> None:
        await self.request(
            "mutation RenameSpace($id: String!, $name: String!) { renameSpace(id: $id, name: $name) }",
            {"id": space_id, "name": name},
        )

    # -- Space content --------------------------------------------------------

    async def set_space_meta(self, space_id: str, meta: dict[str, Any], conversation_id: str) -> None:
        mutation = """
        mutation SetSpaceMeta($id: String!, $meta: String!, $conversationId: String!) {
          setSpaceMeta(id: $id, meta: $meta, conversationId: $conversationId)
        }
        """
        await self.request(
            mutation, {"id": space_id, "meta": json.dumps(meta), "conversationId": conversation_id}
        )

    async def create_object(
        self,
        space_id: str,
        data: dict[str, Any],
        conversation_id: str,
        prompt: Optional[str] = None,
        ephemeral: Optional[bool] = None,
    ) -> str:
        mutation = """
        mutation CreateObject($spaceId: String!, $data: String!, $prompt: String,
                              $conversationId: String!, $ephemeral: Boolean) {
          createObject(spaceId: $spaceId, data: $data, prompt: $prompt,
                       conversationId: $conversationId, ephemeral: $ephemeral)
        }
        """
        result = await self.request(
            mutation,
            {
                "spaceId": space_id,
                "data": json.dumps(data),
                "prompt": prompt,
                "conversationId": conversation_id,
                "ephemeral": ephemeral,
            },
        )
        return result["createObject"] or ""

    async def update_object(
        self,
        space_id: str,
        object_id: str,
        conversation_id: str,
        data: Optional[dict[str, Any]] = None,
        prompt: Optional[str] = None,
        ephemeral: Optional[bool] = None,
    ) -> str:
        mutation = """
        mutation UpdateObject($spaceId: String!, $id: String!, $data: String, $prompt: String,
                              $conversationId: String!, $ephemeral: Boolean) {
          updateObject(spaceId: $spaceId, id: $id, data: $data, prompt: $prompt,
                       conversationId: $conversationId, ephemeral: $ephemeral)
        }
        """
        result = await self.request(
            mutation,
            {
                "spaceId": space_id,
                "id": object_id,
                "data": json.dumps(data) if data is not None else None,
                "prompt": prompt,
                "conversationId": conversation_id,
                "ephemeral": ephemeral,
            },
        )
        return result["updateObject"] or ""

    async def delete_objects(self, space_id: str, object_ids: list[str], conversation_id: str) -> None:
        mutation = """
        mutation DeleteObjects($spaceId: String!, $ids: [String!]!, $conversationId: String!) {
          deleteObjects(spaceId: $spaceId, ids: $ids, conversationId: $conversationId)
        }
        """
        await self.request(
            mutation, {"spaceId": space_id, "ids": list(object_ids), "conversationId": conversation_id}
        )

    async def find_objects(
        self,
        space_id: str,
        conversation_id: str,
        where: Optional[dict[str, Any]] = None,
        prompt: Optional[str] = None,
        limit: Optional[int] = None,
        object_ids: Optional[list[str]] = None,
        order: Optional[str] = None,
        ephemeral: Optional[bool] = None,
    ) -> tuple[list[dict[str, Any]], str]:
        query = """
        query FindObjects($spaceId: String!, $where: String, $prompt: String, $limit: Int,
                          $objectIds: [String!], $order: String, $conversationId: String!,
                          $ephemeral: Boolean) {
          findObjects(spaceId: $spaceId, where: $where, prompt: $prompt, limit: $limit,
                      objectIds: $objectIds, order: $order, conversationId: $conversationId,
                      ephemeral: $ephemeral) { objects message }
        }
        """
        result = (
            await self.request(
                query,
                {
                    "spaceId": space_id,
                    "where": json.dumps(where) if where else None,
                    "prompt": prompt,
                    "limit": limit,
                    "objectIds": list(object_ids or []),
                    "order": order,
                    "conversationId": conversation_id,
                    "ephemeral": ephemeral,
                },
            )
        )["findObjects"]
        return json.loads(result["objects"]), result.get("message") or ""

    async def prompt(
        self,
        space_id: str,
        prompt: str,
        conversation_id: str,
        object_ids: Optional[list[str]] = None,
        response_schema: Optional[dict[str, Any]] = None,
        effort: Optional[str] = None,
        ephemeral: Optional[bool] = None,
        read_only: Optional[bool] = None,
    ) -> tuple[str, list[str]]:
        mutation = """
        mutation Prompt($spaceId: String!, $prompt: String!, $objectIds: [String!],
                        $responseSchema: JSON, $conversationId: String!, $effort: PromptEffort,
                        $ephemeral: Boolean, $readOnly: Boolean) {
          prompt(spaceId: $spaceId, prompt: $prompt, objectIds: $objectIds,
                 responseSchema: $responseSchema, conversationId: $conversationId,
                 effort: $effort, ephemeral: $ephemeral, readOnly: $readOnly) {
            message
            modifiedObjectIds
          }
        }
        """
        result = (
            await self.request(
                mutation,
                {
                    "spaceId": space_id,
                    "prompt": prompt,
                    "objectIds": list(object_ids or []),
                    "responseSchema": response_schema,
                    "conversationId": conversation_id,
                    "effort": effort,
                    "ephemeral": ephemeral,
                    "readOnly": read_only,
                },
            )
        )["prompt"]
        return result.get("message") or "", list(result.get("modifiedObjectIds") or [])

    async def link(
        self, space_id: str, source: str, relation: str, target: str, conversation_id: str
    ) -> None:
        mutation = """
        mutation Link($spaceId: String!, $source: String!, $relation: String!, $target: String!,
                      $conversationId: String!) {
          link(spaceId: $spaceId, source: $source, relation: $relation, target: $target,
               conversationId: $conversationId)
        }
        """
        await self.request(
            mutation,
            {
                "spaceId": space_id,
                "source": source,
                "relation": relation,
                "target": target,
                "conversationId": conversation_id,
            },
        )

    async def unlink(
        self,
        space_id: str,
        source: str,
        relation: Optional[str],
        target: Optional[str],
        conversation_id: str,
    ) -> None:
        mutation = """
        mutation Unlink($spaceId: String!, $source: String!, $relation: String, $target: String,
                        $conversationId: String!) {
          unlink(spaceId: $spaceId, source: $source, relation: $relation, target: $target,
                 conversationId: $conversationId)
        }
        """
        await self.request(
            mutation,
            {
                "spaceId": space_id,
                "source": source,
                "relation": relation,
                "target": target,
                "conversationId": conversation_id,
            },
        )

    # -- Conversations --------------------------------------------------------

    async def list_conversations(self, space_id: str) -> list[dict[str, Any]]:
        query = """
        query ListConversations($spaceId: String!) {
          listConversations(spaceId: $spaceId) {
            id name createdAt createdBy createdByName interactionCount
          }
        }
        """
        return list((await self.request(query, {"spaceId": space_id}))["listConversations"])

    async def rename_conversation(self, space_id: str, conversation_id: str, name: str) -> None:
        mutation = """
        mutation UpdateConversation($spaceId: String!, $conversationId: String!, $name: String!) {
          updateConversation(spaceId: $spaceId, conversationId: $conversationId, name: $name)
        }
        """
        await self.request(
            mutation, {"spaceId": space_id, "conversationId": conversation_id, "name": name}
        )

    async def set_system_instruction(
        self, space_id: str, conversation_id: str, instruction: Optional[str]
    ) -> None:
        mutation = """
        mutation UpdateConversation($spaceId: String!, $conversationId: String!,
                                    $systemInstruction: String) {
          updateConversation(spaceId: $spaceId, conversationId: $conversationId,
                             systemInstruction: $systemInstruction)
        }
        """
        await self.request(
            mutation,
            {"spaceId": space_id, "conversationId": conversation_id, "systemInstruction": instruction},
        )

    async def delete_conversation(self, space_id: str, conversation_id: str) -> None:
        mutation = """
        mutation DeleteConversation($spaceId: String!, $conversationId: String!) {
          deleteConversation(spaceId: $spaceId, conversationId: $conversationId)
        }
        """
        await self.request(mutation, {"spaceId": space_id, "conversationId": conversation_id})

    # -- Checkpoints ----------------------------------------------------------

    async def checkpoint(self, space_id: str, label: Optional[str], conversation_id: str) -> str:
        mutation = """
        mutation Checkpoint($spaceId: String!, $label: String, $conversationId: String!) {
          checkpoint(spaceId: $spaceId, label: $label, conversationId: $conversationId) {
            checkpointId
          }
        }
        """
        result = await self.request(
            mutation, {"spaceId": space_id, "label": label, "conversationId": conversation_id}
        )
        return result["checkpoint"]["checkpointId"]

    async def undo(self, space_id: str, conversation_id: str) -> bool:
        mutation = """
        mutation Undo($spaceId: String!, $conversationId: String!) {
          undo(spaceId: $spaceId, conversationId: $conversationId) { success }
        }
        """
        result = await self.request(mutation, {"spaceId": space_id, "conversationId": conversation_id})
        return bool(result["undo"]["success"])

    async def redo(self, space_id: str, conversation_id: str) -> bool:
        mutation = """
        mutation Redo($spaceId: String!, $conversationId: String!) {
          redo(spaceId: $spaceId, conversationId: $conversationId) { success }
        }
        """
        result = await self.request(mutation, {"spaceId": space_id, "conversationId": conversation_id})
        return bool(result["redo"]["success"])

    async def checkpoint_status(self, space_id: str, conversation_id: str) -> tuple[bool, bool]:
        """Returns ``(can_undo, can_redo)``."""
        query = """
        query CheckpointStatus($spaceId: String!, $conversationId: String!) {
          checkpointStatus(spaceId: $spaceId, conversationId: $conversationId) { canUndo canRedo }
        }
        """
        status = (
            await self.request(query, {"spaceId": space_id, "conversationId": conversation_id})
        )["checkpointStatus"]
        return bool(status["canUndo"]), bool(status["canRedo"])

    async def clear_checkpoint_history(self, space_id: str, conversation_id: str) -> None:
        mutation = """
        mutation ClearCheckpointHistory($spaceId: String!, $conversationId: String!) {
          clearCheckpointHistory(spaceId: $spaceId, conversationId: $conversationId)
        }
        """
        await self.request(mutation, {"spaceId": space_id, "conversationId": conversation_id})

    # -- Account --------------------------------------------------------------

    async def get_account(self) -> CurrentUser:
        query = """
        query GetAccount {
          getAccount { id email name slug plan storage }
        }
        """
        return CurrentUser.from_dict((await self.request(query))["getAccount"])

    async def set_user_storage(self, key: str, value: Any) -> None:
        mutation = """
        mutation SetUserStorage($key: String!, $value: JSON) {
          setUserStorage(key: $key, value: $value)
        }
        """
        await self.request(mutation, {"key": key, "value": value})
