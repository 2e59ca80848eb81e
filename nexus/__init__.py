"""
Nexus - 角色扮演对话流式生成与记忆编排引擎
"""

__version__ = "1.0.0"
