"""Normalize inbound socket frames into ChatEvents."""

from typing import Any

import structlog
from pydantic import ValidationError

from livechat.schemas.chat_schema import AgentInfo, ChatEvent, ChatMessage

logger = structlog.get_logger()


def parse_frame(data: Any, session_id: str) -> ChatEvent | None:
    """Map a decoded socket frame to an event, or None if unrecognized.

    Frames carrying ``messageId`` or ``content`` are messages; the remaining
    shapes are typing indicators, closure notices and agent assignment.
    """
    if not isinstance(data, dict):
        return None

    if data.get("messageId") or data.get("content"):
        payload = {k: v for k, v in data.items() if v is not None}
        payload.setdefault("sessionId", session_id)
        try:
            message = ChatMessage.model_validate(payload)
        except ValidationError:
            logger.warning("Dropping malformed message frame", session_id=session_id)
            return None
        return ChatEvent(type="message", session_id=session_id, message=message)

    frame_type = data.get("type")
    if frame_type == "typing":
        sender_id = data.get("senderId")
        return ChatEvent(
            type="typing",
            session_id=session_id,
            is_typing=data.get("isTyping") is not False,
            sender_id=str(sender_id) if sender_id is not None else None,
        )

    if frame_type == "session_closed" or data.get("status") == "CLOSED":
        return ChatEvent(type="session_closed", session_id=session_id)

    if frame_type == "agent_join" or data.get("agentId"):
        agent = data.get("agent") if isinstance(data.get("agent"), dict) else {}
        agent_id = data.get("agentId") or agent.get("id")
        if not agent_id:
            return None
        name = data.get("agentName") or agent.get("name") or "Support Agent"
        return ChatEvent(
            type="agent_join",
            session_id=session_id,
            agent=AgentInfo(id=str(agent_id), name=name),
        )

    return None
