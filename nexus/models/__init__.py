"""
Models module for data structures
"""

from .message import Message, MessageRole
from .session import ChatSession, GroupChatSession
from .catalog import Character, UserPersona, World, WorldEntry
from .generation import (
    GenerationState,
    GenerationOutcome,
    GenerationEventType,
    GenerationEvent,
    GenerationResult
)

__all__ = [
    'Message',
    'MessageRole',
    'ChatSession',
    'GroupChatSession',
    'Character',
    'UserPersona',
    'World',
    'WorldEntry',
    'GenerationState',
    'GenerationOutcome',
    'GenerationEventType',
    'GenerationEvent',
    'GenerationResult'
]
