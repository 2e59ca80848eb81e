"""
生成过程数据模型 - 状态机、结果与事件
"""

from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field

from .message import Message


class GenerationState(str, Enum):
    """
    生成状态机

    IDLE -> REQUESTING -> STREAMING -> FINALIZING -> IDLE
    CANCELLED / ERRORED 从 REQUESTING 或 STREAMING 分出，仍经过 FINALIZING
    """
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CANCELLED = "cancelled"
    ERRORED = "errored"


class GenerationOutcome(str, Enum):
    """生成最终结果"""
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


class GenerationEventType(str, Enum):
    """推送给调用方的事件类型"""
    WARNING = "warning"
    MESSAGE = "message"
    ERROR = "error"
    DONE = "done"


class GenerationEvent(BaseModel):
    """生成过程中的事件"""
    type: GenerationEventType = Field(..., description="事件类型")
    message_id: Optional[str] = Field(None, description="助手消息ID")
    content: Optional[str] = Field(None, description="当前可见内容")
    reasoning: Optional[str] = Field(None, description="当前推理内容")
    message: Optional[str] = Field(None, description="警告或错误文本")


class GenerationResult(BaseModel):
    """一次生成的结果"""
    outcome: GenerationOutcome = Field(..., description="结果")
    messages: List[Message] = Field(default_factory=list, description="更新后的消息列表")
    assistant_message: Optional[Message] = Field(None, description="最终助手消息")
    memory_summary: Optional[str] = Field(None, description="更新后的记忆摘要")
    error: Optional[str] = Field(None, description="错误信息")
    warnings: List[str] = Field(default_factory=list, description="非致命警告")
