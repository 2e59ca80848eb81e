"""
Catalog - 角色、世界设定、用户人设的只读目录

从 JSON 文件加载：
{
  "user_persona": {"name": "...", "description": "..."},
  "characters": [{"id": "...", "name": "...", "persona": "..."}],
  "worlds": [{"id": "...", "name": "...", "entries": [...]}]
}
引擎只读取目录，增删改由外部负责。
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import aiofiles

from nexus.models.catalog import Character, UserPersona, World

logger = logging.getLogger(__name__)


class Catalog:
    """角色 / 世界 / 用户人设目录"""

    def __init__(
        self,
        characters: Sequence[Character] = (),
        worlds: Sequence[World] = (),
        user_persona: Optional[UserPersona] = None
    ):
        self._characters: Dict[str, Character] = {c.id: c for c in characters}
        self._worlds: Dict[str, World] = {w.id: w for w in worlds}
        self.user_persona = user_persona

    @classmethod
    def from_dict(cls, data: dict) -> "Catalog":
        persona = data.get("user_persona")
        return cls(
            characters=[Character.model_validate(c) for c in data.get("characters", [])],
            worlds=[World.model_validate(w) for w in data.get("worlds", [])],
            user_persona=UserPersona.model_validate(persona) if persona else None
        )

    @classmethod
    async def load(cls, path: Path) -> "Catalog":
        """
        从 JSON 文件加载目录

        Args:
            path: 目录文件路径；文件不存在时返回空目录

        Returns:
            Catalog 实例
        """
        if not path.exists():
            logger.warning(f"⚠️  目录文件不存在: {path}, 使用空目录")
            return cls()

        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            data = json.loads(await f.read())

        catalog = cls.from_dict(data)
        logger.info(
            f"✅ 目录加载完成: characters={len(catalog._characters)}, worlds={len(catalog._worlds)}"
        )
        return catalog

    def get_character(self, character_id: Optional[str]) -> Optional[Character]:
        if not character_id:
            return None
        return self._characters.get(character_id)

    def get_world(self, world_id: Optional[str]) -> Optional[World]:
        if not world_id:
            return None
        return self._worlds.get(world_id)

    def participants(self, participant_ids: Sequence[str]) -> List[Character]:
        """按会话参与者顺序返回已知角色"""
        return [self._characters[cid] for cid in participant_ids if cid in self._characters]


# 全局目录实例
_catalog_instance: Optional[Catalog] = None


def get_catalog() -> Catalog:
    global _catalog_instance
    if _catalog_instance is None:
        _catalog_instance = Catalog()
    return _catalog_instance


def set_catalog(catalog: Catalog) -> None:
    global _catalog_instance
    _catalog_instance = catalog


__all__ = ["Catalog", "get_catalog", "set_catalog"]
