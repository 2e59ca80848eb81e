"""
Message数据模型 - 对话记录中的单条消息
"""

import uuid
from enum import Enum
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class MessageRole(str, Enum):
    """消息角色"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"  # 仅用于压缩提示等合成消息


def new_message_id() -> str:
    return str(uuid.uuid4())


class Message(BaseModel):
    """
    对话记录中的单条消息

    - speaker_id: 仅群聊有效，标识发言的参与者
    - reasoning: 仅 assistant 有效，推理侧通道文本
    - is_error: 生成失败时的内联错误回复
    """
    id: str = Field(default_factory=new_message_id, description="消息ID")
    role: MessageRole = Field(..., description="消息角色")
    content: str = Field(default="", description="可见内容")
    timestamp: Optional[datetime] = Field(default_factory=datetime.now, description="创建时间")
    speaker_id: Optional[str] = Field(None, description="群聊发言者ID")
    reasoning: Optional[str] = Field(None, description="推理文本")
    is_error: bool = Field(default=False, description="是否为错误回复")

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str = "") -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=content)
