"""
Chat API routes - 对话操作接口

会话路径: /api/sessions/{namespace}/{session_id}
- namespace: 单人会话为 character_id，群聊会话为 "group"

生成类操作（发送、重新生成、继续、编辑）返回 SSE 事件流：
session -> message* / warning* -> done | error
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from nexus.models.session import ChatSession, GroupChatSession
from nexus.services.cancellation import CancellationToken
from nexus.services.chat_service import ChatService, get_chat_service
from nexus.services.errors import MessageNotFoundError, SessionNotFoundError
from nexus.storage.base import AnySession
from nexus.api.streaming_utils import create_sse_response, stream_generation_events

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])


class SendMessageRequest(BaseModel):
    """发送消息请求"""
    content: str = Field(..., description="消息内容")


class EditMessageRequest(BaseModel):
    """编辑消息请求"""
    content: str = Field(..., description="新内容")


class SessionStateResponse(BaseModel):
    """会话生成状态"""
    session_id: str
    state: str
    is_generating: bool


async def _load_session(service: ChatService, namespace: str, session_id: str) -> AnySession:
    try:
        return await service.load_session(session_id, namespace)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")


def _ensure_idle(service: ChatService, session_id: str) -> None:
    if service.is_generating(session_id):
        raise HTTPException(status_code=409, detail="A generation is already in progress")


@router.put("/sessions/solo", response_model=ChatSession)
async def put_solo_session(session: ChatSession, service: ChatService = Depends(get_chat_service)):
    """登记或整体替换单人会话（会话由外部创建）"""
    if not session.character_id:
        raise HTTPException(status_code=400, detail="character_id is required")
    _ensure_idle(service, session.id)
    await service.store.save_session(session)
    return session


@router.put("/sessions/group", response_model=GroupChatSession)
async def put_group_session(session: GroupChatSession, service: ChatService = Depends(get_chat_service)):
    """登记或整体替换群聊会话"""
    _ensure_idle(service, session.id)
    await service.store.save_session(session)
    return session


@router.get("/sessions/{namespace}/{session_id}")
async def get_session(namespace: str, session_id: str, service: ChatService = Depends(get_chat_service)):
    session = await _load_session(service, namespace, session_id)
    return session.model_dump(mode="json")


@router.get("/sessions/{namespace}/{session_id}/state", response_model=SessionStateResponse)
async def get_session_state(namespace: str, session_id: str, service: ChatService = Depends(get_chat_service)):
    return SessionStateResponse(
        session_id=session_id,
        state=service.orchestrator.get_state(session_id).value,
        is_generating=service.is_generating(session_id)
    )


@router.post("/sessions/{namespace}/{session_id}/messages")
async def send_message(
    namespace: str,
    session_id: str,
    req: SendMessageRequest,
    service: ChatService = Depends(get_chat_service)
):
    """发送消息（SSE）"""
    if not req.content.strip():
        raise HTTPException(status_code=400, detail="Message content must not be empty")
    session = await _load_session(service, namespace, session_id)
    _ensure_idle(service, session.id)

    token = CancellationToken()
    logger.info(f"Processing message for session {session.id}: {req.content[:50]}...")
    return create_sse_response(stream_generation_events(
        lambda on_event: service.send_message(session, req.content, token, on_event),
        token,
        session.id
    ))


@router.post("/sessions/{namespace}/{session_id}/regenerate")
async def regenerate(namespace: str, session_id: str, service: ChatService = Depends(get_chat_service)):
    """重新生成最后一条回复（SSE）"""
    session = await _load_session(service, namespace, session_id)
    _ensure_idle(service, session.id)

    token = CancellationToken()
    return create_sse_response(stream_generation_events(
        lambda on_event: service.regenerate_response(session, token, on_event),
        token,
        session.id
    ))


@router.post("/sessions/{namespace}/{session_id}/continue")
async def continue_generation(namespace: str, session_id: str, service: ChatService = Depends(get_chat_service)):
    """继续生成（SSE）"""
    session = await _load_session(service, namespace, session_id)
    _ensure_idle(service, session.id)

    token = CancellationToken()
    return create_sse_response(stream_generation_events(
        lambda on_event: service.continue_generation(session, token, on_event),
        token,
        session.id
    ))


@router.patch("/sessions/{namespace}/{session_id}/messages/{message_id}")
async def edit_message(
    namespace: str,
    session_id: str,
    message_id: str,
    req: EditMessageRequest,
    service: ChatService = Depends(get_chat_service)
):
    """编辑消息（SSE；编辑用户消息时会重新生成）"""
    session = await _load_session(service, namespace, session_id)
    _ensure_idle(service, session.id)
    if session.find_index(message_id) == -1:
        raise HTTPException(status_code=404, detail="Message not found")

    token = CancellationToken()
    return create_sse_response(stream_generation_events(
        lambda on_event: service.edit_message(session, message_id, req.content, token, on_event),
        token,
        session.id
    ))


@router.delete("/sessions/{namespace}/{session_id}/messages/{message_id}")
async def delete_message(
    namespace: str,
    session_id: str,
    message_id: str,
    service: ChatService = Depends(get_chat_service)
):
    session = await _load_session(service, namespace, session_id)
    _ensure_idle(service, session.id)
    if not await service.delete_message(session, message_id):
        raise HTTPException(status_code=404, detail="Message not found")
    return {"status": "success", "message_count": len(session.messages)}


@router.post("/sessions/{namespace}/{session_id}/fork/{message_id}")
async def fork_session(
    namespace: str,
    session_id: str,
    message_id: str,
    service: ChatService = Depends(get_chat_service)
):
    """截断到指定消息（含）"""
    session = await _load_session(service, namespace, session_id)
    _ensure_idle(service, session.id)
    try:
        removed = await service.fork_truncate(session, message_id)
    except MessageNotFoundError:
        raise HTTPException(status_code=404, detail="Message not found")
    return {"status": "success", "removed": removed, "message_count": len(session.messages)}


@router.post("/sessions/{namespace}/{session_id}/stop")
async def stop_generation(namespace: str, session_id: str, service: ChatService = Depends(get_chat_service)):
    """停止生成（重复调用无效果）"""
    stopped = service.stop_generation(session_id)
    return {"status": "success", "stopped": stopped}


@router.delete("/sessions/{namespace}/{session_id}")
async def delete_session(namespace: str, session_id: str, service: ChatService = Depends(get_chat_service)):
    _ensure_idle(service, session_id)
    if not await service.store.delete_session(session_id, namespace):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"status": "success"}


@router.get("/sessions/{namespace}")
async def list_sessions(namespace: str, service: ChatService = Depends(get_chat_service)):
    sessions = await service.store.list_sessions(namespace)
    return [s.model_dump(mode="json") for s in sessions]
