"""
目录数据模型 - 角色、用户人设、世界设定（引擎只读）
"""

from typing import List
from pydantic import BaseModel, Field


class Character(BaseModel):
    """角色"""
    id: str = Field(..., description="角色ID")
    name: str = Field(..., description="显示名称")
    persona: str = Field(default="", description="角色设定")


class UserPersona(BaseModel):
    """用户人设"""
    name: str = Field(default="User", description="用户名")
    description: str = Field(default="", description="用户描述")


class WorldEntry(BaseModel):
    """世界设定条目"""
    id: str = Field(..., description="条目ID")
    name: str = Field(default="", description="条目名称")
    keys: List[str] = Field(default_factory=list, description="触发关键词")
    content: str = Field(default="", description="条目内容")
    enabled: bool = Field(default=True, description="是否启用")
    always_active: bool = Field(default=False, description="是否常驻")


class World(BaseModel):
    """世界设定"""
    id: str = Field(..., description="世界ID")
    name: str = Field(..., description="世界名称")
    description: str = Field(default="", description="世界描述")
    entries: List[WorldEntry] = Field(default_factory=list, description="设定条目")
