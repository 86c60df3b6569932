"""Thin client for the backend's conversation persistence endpoints."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .client import ChatClient
from .errors import ChatTransportError
from .schemas.chat import ConversationMeta

logger = logging.getLogger(__name__)


class LinkedConversation(ConversationMeta):
    """A comparison model's conversation stored under a parent conversation."""

    messages: List[dict[str, Any]] = Field(default_factory=list)


class ConversationWithMessages(ConversationMeta):
    messages: List[dict[str, Any]] = Field(default_factory=list)
    linked_conversations: List[LinkedConversation] = Field(default_factory=list)


class ConversationsPage(BaseModel):
    items: List[ConversationMeta] = Field(default_factory=list)
    next_cursor: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ConversationsAPI:
    """CRUD wrapper sharing the chat client's connection pool and headers."""

    def __init__(self, client: ChatClient):
        self._client = client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        http_client = await self._client.get_http_client()
        url = f"{self._client.base_url}/conversations{path}"
        try:
            response = await http_client.request(
                method,
                url,
                headers=self._client.headers(),
                params=params,
                json=json,
            )
        except httpx.HTTPError as exc:
            raise ChatTransportError(str(exc) or exc.__class__.__name__) from exc

        if response.status_code >= 400:
            raise self._client.error_from_response(
                response.status_code, response.content
            )
        if response.status_code == httpx.codes.NO_CONTENT or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ChatTransportError(str(exc) or exc.__class__.__name__) from exc

    async def create(
        self,
        *,
        model: str | None = None,
        provider_id: str | None = None,
        title: str | None = None,
    ) -> ConversationMeta:
        body = {
            key: value
            for key, value in {
                "model": model,
                "provider_id": provider_id,
                "title": title,
            }.items()
            if value is not None
        }
        data = await self._request("POST", "", json=body)
        logger.debug("Created conversation %s", (data or {}).get("id"))
        return ConversationMeta.model_validate(data)

    async def get(
        self,
        conversation_id: str,
        *,
        limit: int = 200,
        include_linked: str | None = None,
    ) -> ConversationWithMessages:
        params: dict[str, Any] = {"limit": limit}
        if include_linked:
            params["include_linked"] = include_linked
        data = await self._request("GET", f"/{conversation_id}", params=params)
        return ConversationWithMessages.model_validate(data)

    async def list(
        self, *, cursor: str | None = None, limit: int = 50
    ) -> ConversationsPage:
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        data = await self._request("GET", "", params=params)
        if isinstance(data, list):
            return ConversationsPage(
                items=[ConversationMeta.model_validate(item) for item in data]
            )
        return ConversationsPage.model_validate(data or {})

    async def delete(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/{conversation_id}")

    async def edit_message(
        self, conversation_id: str, message_id: str, content: Any
    ) -> dict[str, Any]:
        data = await self._request(
            "PUT",
            f"/{conversation_id}/messages/{message_id}/edit",
            json={"content": content},
        )
        return data if isinstance(data, dict) else {}

    async def get_linked(self, parent_id: str) -> List[ConversationMeta]:
        data = await self._request("GET", f"/{parent_id}/linked")
        items = data.get("items", []) if isinstance(data, dict) else data or []
        return [ConversationMeta.model_validate(item) for item in items]


__all__ = [
    "ConversationWithMessages",
    "ConversationsAPI",
    "ConversationsPage",
    "LinkedConversation",
]
