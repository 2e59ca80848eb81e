"""
Session数据模型 - 单人会话与群聊会话

数据结构设计：
- ChatSession: 单人会话，归属于某个角色（character_id 作为二级存储键）
- GroupChatSession: 群聊会话，包含有序参与者列表和场景描述

引擎从不创建或删除会话，只追加、更新、截断 messages 以及扩展 memory_summary。
"""

from typing import Optional, List
from pydantic import BaseModel, Field

from .message import Message


class ChatSession(BaseModel):
    """单人会话"""
    id: str = Field(..., description="会话ID")
    title: str = Field(default="New Chat", description="会话标题")
    character_id: Optional[str] = Field(None, description="所属角色ID")
    messages: List[Message] = Field(default_factory=list, description="有序消息列表")
    world_id: Optional[str] = Field(None, description="关联世界ID")

    # 会话级覆盖设置（None 表示使用全局默认值）
    temperature: Optional[float] = Field(None, description="采样温度")
    context_size: Optional[int] = Field(None, description="上下文预算（token）")
    max_output_tokens: Optional[int] = Field(None, description="最大输出token")
    reasoning_enabled: Optional[bool] = Field(None, description="是否启用推理")
    memory_enabled: bool = Field(default=True, description="是否启用记忆压缩")
    memory_summary: Optional[str] = Field(None, description="累计记忆摘要")

    @property
    def is_group(self) -> bool:
        return False

    def find_index(self, message_id: str) -> int:
        """
        查找消息下标

        Returns:
            下标，不存在返回 -1
        """
        for i, msg in enumerate(self.messages):
            if msg.id == message_id:
                return i
        return -1


class GroupChatSession(ChatSession):
    """群聊会话"""
    participant_ids: List[str] = Field(default_factory=list, description="有序参与者ID列表")
    scenario: str = Field(default="", description="场景描述")

    @property
    def is_group(self) -> bool:
        return True
