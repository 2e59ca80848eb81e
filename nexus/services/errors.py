"""
异常类型与面向用户的错误文案
"""

from typing import Optional


ERROR_MESSAGES = {
    "API_KEY_MISSING": "API key for {provider} is not configured. Please check your settings.",
    "API_KEY_INVALID": "Invalid API key for {provider}. Please verify your credentials.",
    "RATE_LIMIT": "Rate limit exceeded for {provider}. Please wait before trying again.",
    "MODEL_NOT_FOUND": "Model not found or API endpoint is incorrect for {provider}.",
    "MODEL_MISSING": "No model is selected for {provider}. Please check your settings.",
    "NETWORK_ERROR": "Network error. Please check your internet connection.",
    "UNKNOWN_ERROR": "An unexpected error occurred. Please try again.",
    "SUMMARIZATION_FAILED": "Auto-summarization failed. Check API key and model settings.",
}


class NexusError(Exception):
    """引擎异常基类"""
    pass


class GenerationCancelledError(NexusError):
    """生成被取消（静默，不展示给用户）"""
    pass


class ConfigurationMissingError(NexusError):
    """凭据或模型缺失，在发起任何网络请求前失败"""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class ProviderError(NexusError):
    """Provider 返回错误或传输失败"""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        provider: Optional[str] = None,
        body: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.provider = provider
        self.body = body


class SummarizationError(NexusError):
    """记忆摘要调用失败（非致命）"""
    pass


class GenerationInProgressError(NexusError):
    """同一会话已有进行中的生成"""

    def __init__(self, session_id: str):
        super().__init__(f"A generation is already in progress for session {session_id}")
        self.session_id = session_id


class MessageNotFoundError(NexusError):
    """消息不存在"""

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class SessionNotFoundError(NexusError):
    """会话不存在"""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found")
        self.session_id = session_id


__all__ = [
    "ERROR_MESSAGES",
    "NexusError",
    "GenerationCancelledError",
    "ConfigurationMissingError",
    "ProviderError",
    "SummarizationError",
    "GenerationInProgressError",
    "MessageNotFoundError",
    "SessionNotFoundError",
]
