"""Async HTTP client for the remote chat backend."""

from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from livechat.core.exceptions import (
    ChatApiError,
    SessionCreateError,
    SessionNotFoundError,
    TokenRequestError,
)
from livechat.core.settings import ChatApiConfig
from livechat.schemas.chat_schema import (
    ChatMessage,
    ChatSession,
    SenderType,
    SessionStatus,
)

logger = structlog.get_logger()

SESSIONS_PATH = "/api/chat/sessions"


def build_http_client(
    config: ChatApiConfig,
    auth: httpx.Auth | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the httpx client used by ChatApi."""
    return httpx.AsyncClient(
        base_url=config.base_url.rstrip("/"),
        timeout=httpx.Timeout(config.timeout_seconds),
        headers={"Content-Type": "application/json"},
        auth=auth,
        transport=transport,
    )


def unwrap_list(data: Any, key: str) -> list[Any]:
    """Accept a bare array or an object wrapping it under ``key`` or ``data``."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        items = data.get(key) or data.get("data") or []
        return items if isinstance(items, list) else []
    return []


def _present(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def _parse_sessions(items: list[Any]) -> list[ChatSession]:
    sessions: list[ChatSession] = []
    for item in items:
        try:
            sessions.append(ChatSession.model_validate(item))
        except ValidationError:
            logger.warning("Skipping malformed session from chat API", item=item)
    return sessions


def _parse_messages(items: list[Any], session_id: str) -> list[ChatMessage]:
    messages: list[ChatMessage] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            messages.append(
                ChatMessage.model_validate({"sessionId": session_id, **_present(item)})
            )
        except ValidationError:
            logger.warning("Skipping malformed message from chat API", item=item)
    return messages


class ChatApi:
    """Thin wrapper over the chat REST endpoints.

    Every method raises ChatApiError on network failure or non-2xx status.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method, path, params=params, json=json
            )
        except TokenRequestError as e:
            raise ChatApiError(message=e.message, status_code=401) from e
        except httpx.HTTPError as e:
            logger.warning(
                "Chat API request failed", method=method, path=path, error=str(e)
            )
            raise ChatApiError(
                message="Unable to connect to chat server. Check your connection."
            ) from e

        if response.is_error:
            message = self._error_message(response)
            logger.warning(
                "Chat API returned error",
                method=method,
                path=path,
                status=response.status_code,
                message=message,
            )
            raise ChatApiError(message=message, status_code=response.status_code)
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return f"Chat server returned {response.status_code}"
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or response.status_code)
        return f"Chat server returned {response.status_code}"

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    # --- Sessions ---

    async def create_session(
        self, account_id: str, subject: str | None = None
    ) -> ChatSession:
        """POST /api/chat/sessions."""
        body: dict[str, Any] = {"accountId": account_id}
        if subject:
            body["subject"] = subject
        data = self._json(await self._request("POST", SESSIONS_PATH, json=body))
        if not isinstance(data, dict) or not data.get("sessionId"):
            raise SessionCreateError()
        payload = {"accountId": account_id, "subject": subject, **_present(data)}
        return ChatSession.model_validate(_present(payload))

    async def get_session(self, session_id: str) -> ChatSession:
        """GET /api/chat/sessions/{id}; 404 raises SessionNotFoundError."""
        try:
            response = await self._request("GET", f"{SESSIONS_PATH}/{session_id}")
        except ChatApiError as e:
            if e.status_code == 404:
                raise SessionNotFoundError() from e
            raise
        data = self._json(response)
        if not isinstance(data, dict):
            raise ChatApiError(message="Malformed session response")
        return ChatSession.model_validate({"sessionId": session_id, **_present(data)})

    async def list_sessions(
        self, status: SessionStatus | None = None
    ) -> list[ChatSession]:
        """GET /api/chat/sessions (agent only)."""
        params = {"status": status} if status else None
        data = self._json(await self._request("GET", SESSIONS_PATH, params=params))
        return _parse_sessions(unwrap_list(data, "sessions"))

    async def get_queue(self) -> list[ChatSession]:
        """GET /api/chat/queue (agent only): sessions waiting for an agent."""
        data = self._json(await self._request("GET", "/api/chat/queue"))
        return _parse_sessions(unwrap_list(data, "sessions"))

    async def get_my_sessions(self, account_id: str) -> list[ChatSession]:
        """GET /api/chat/my-sessions?accountId=."""
        data = self._json(
            await self._request(
                "GET", "/api/chat/my-sessions", params={"accountId": account_id}
            )
        )
        return _parse_sessions(unwrap_list(data, "sessions"))

    async def assign_agent(self, session_id: str, agent_id: str) -> ChatSession | None:
        """POST /api/chat/sessions/{id}/assign?agentId= (agent only)."""
        data = self._json(
            await self._request(
                "POST",
                f"{SESSIONS_PATH}/{session_id}/assign",
                params={"agentId": agent_id},
            )
        )
        if not isinstance(data, dict):
            return None
        return ChatSession.model_validate(
            {"sessionId": session_id, "agentId": agent_id, **_present(data)}
        )

    async def close_session(self, session_id: str) -> ChatSession | None:
        """POST /api/chat/sessions/{id}/close."""
        data = self._json(
            await self._request("POST", f"{SESSIONS_PATH}/{session_id}/close")
        )
        if not isinstance(data, dict):
            return None
        return ChatSession.model_validate(
            {"sessionId": session_id, "status": "CLOSED", **_present(data)}
        )

    async def rate_session(
        self, session_id: str, rating: int, feedback: str | None = None
    ) -> dict[str, Any]:
        """POST /api/chat/sessions/{id}/rate with query parameters."""
        params: dict[str, Any] = {"rating": rating}
        if feedback:
            params["feedback"] = feedback
        data = self._json(
            await self._request(
                "POST", f"{SESSIONS_PATH}/{session_id}/rate", params=params
            )
        )
        return data if isinstance(data, dict) else {}

    async def mark_as_read(self, session_id: str, sender_type: SenderType) -> None:
        """POST /api/chat/sessions/{id}/read?senderType=."""
        await self._request(
            "POST",
            f"{SESSIONS_PATH}/{session_id}/read",
            params={"senderType": sender_type},
        )

    # --- Messages ---

    async def get_messages(self, session_id: str) -> list[ChatMessage]:
        """GET /api/chat/sessions/{id}/messages."""
        data = self._json(
            await self._request("GET", f"{SESSIONS_PATH}/{session_id}/messages")
        )
        return _parse_messages(unwrap_list(data, "messages"), session_id)

    async def send_message(
        self,
        session_id: str,
        sender_id: str | None,
        sender_type: SenderType,
        content: str,
    ) -> ChatMessage:
        """POST /api/chat/sessions/{id}/messages; returns the created message."""
        body = {"senderId": sender_id, "senderType": sender_type, "content": content}
        data = self._json(
            await self._request(
                "POST", f"{SESSIONS_PATH}/{session_id}/messages", json=body
            )
        )
        created = data if isinstance(data, dict) else {}
        return ChatMessage.model_validate(
            {"sessionId": session_id, **_present(body), **_present(created)}
        )
