"""
Application settings and configuration management.
"""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # LLM Provider 配置
    # 凭据缺失不在启动时报错，而是在每次生成时报告 ConfigurationMissing
    LLM_PROVIDER: str = "gemini"  # gemini, openrouter, deepseek
    GEMINI_API_KEY: Optional[str] = None
    OPENROUTER_API_KEY: Optional[str] = None
    DEEPSEEK_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.5-flash"
    OPENROUTER_MODEL: str = ""
    DEEPSEEK_MODEL: str = "deepseek-chat"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1/chat/completions"
    DEEPSEEK_BASE_URL: str = "https://api.deepseek.com/v1/chat/completions"
    PROVIDER_TIMEOUT: float = 120.0  # 秒

    # 生成默认参数（可被会话级设置覆盖）
    SYSTEM_PROMPT: str = (
        "You are a creative and engaging roleplay partner. Stay in character, "
        "write vivid prose, and never speak or act for the user."
    )
    RESPONSE_PREFILL: str = ""
    CONTEXT_SIZE: int = 8192
    MAX_OUTPUT_TOKENS: int = 2048
    TEMPERATURE: float = 0.8
    REASONING_ENABLED: bool = False

    # 记忆压缩 / 流式提交
    MEMORY_TRIGGER_THRESHOLD: float = 0.75
    MEMORY_SLICE_PERCENT: float = 0.5
    RENDER_INTERVAL_MS: int = 100
    PREAMBLE_SCAN_CHARS: int = 400
    MAX_LORE_ENTRIES: int = 7

    # 服务配置
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False

    # Redis 配置
    REDIS_URL: str = "redis://127.0.0.1:6379/0"
    REDIS_USERNAME: Optional[str] = None
    REDIS_PASSWORD: Optional[str] = None
    SESSION_KEY_PREFIX: str = "nexus_session:"
    SESSION_TTL: int = 30 * 86400  # 30天

    # 角色 / 世界 / 用户人设目录
    CATALOG_PATH: str = "./data/catalog.json"

    # CORS配置
    ALLOWED_ORIGINS: list = ["http://localhost:3000", "http://localhost:5173", "http://localhost"]

    class Config:
        env_file = ".env"
        case_sensitive = True


# 创建全局settings实例
settings = Settings()


def get_settings() -> Settings:
    """
    获取设置实例

    Returns:
        Settings 实例
    """
    return settings
