"""
Error Classifier - 将任意失败值归一化为一条面向用户的消息或静默取消信号

设计原则：
- 有序的形状解码器链，每个解码器可独立测试
- 第一个返回结果的解码器胜出
- classify_error 永不抛出异常
"""

import re
import json
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple

import httpx

from .errors import ERROR_MESSAGES, GenerationCancelledError, ProviderError

logger = logging.getLogger(__name__)

UNSTRINGIFIABLE_MESSAGE = "An unstringifiable error object was received."

# 依次尝试的嵌套消息路径
NESTED_MESSAGE_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("response", "data", "error", "message"),
    ("response", "data", "message"),
    ("error", "message"),
    ("message",),
)

_EMBEDDED_JSON = re.compile(r"(\{.*\})", re.DOTALL)
_STATUS_PREFIX = re.compile(r"API request failed with status \d+:\s*")


@dataclass(frozen=True)
class ErrorClassification:
    """
    分类结果

    - silent=True: 取消，不展示给用户
    - message: 面向用户的文本（silent 时为 None）
    """
    silent: bool
    message: Optional[str] = None

    @classmethod
    def cancelled(cls) -> "ErrorClassification":
        return cls(silent=True, message=None)

    @classmethod
    def of(cls, message: str) -> "ErrorClassification":
        return cls(silent=False, message=message)


Decoder = Callable[[Any], Optional[ErrorClassification]]


def _dig(value: Any, path: Iterable[str]) -> Any:
    """按路径逐级读取属性或映射键，任意一级缺失返回 None"""
    current = value
    for key in path:
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(key)
        else:
            current = getattr(current, key, None)
    return current


def _message_from_json(payload: Any) -> Optional[str]:
    if not isinstance(payload, Mapping):
        return None
    for path in (("error", "message"), ("message",)):
        found = _dig(payload, path)
        if isinstance(found, str) and found.strip():
            return found.strip()
    return None


def unwrap_embedded_message(text: str) -> str:
    """
    若文本本身是（或内嵌）带 error.message / message 的 JSON，解包一层

    Args:
        text: 原始消息

    Returns:
        解包后的消息，无法解包时返回原文本
    """
    match = _EMBEDDED_JSON.search(text)
    if not match:
        return text
    try:
        payload = json.loads(match.group(1))
    except ValueError:
        return text
    inner = _message_from_json(payload)
    if inner is None:
        return text
    # 有时消息本身仍是 JSON 字符串
    try:
        nested = _message_from_json(json.loads(inner))
    except ValueError:
        nested = None
    return nested or inner


def decode_cancellation(error: Any) -> Optional[ErrorClassification]:
    if isinstance(error, (GenerationCancelledError, asyncio.CancelledError)):
        return ErrorClassification.cancelled()
    return None


def decode_http_status(error: Any) -> Optional[ErrorClassification]:
    """httpx.HTTPStatusError：优先读取响应体中的错误消息"""
    if not isinstance(error, httpx.HTTPStatusError):
        return None
    try:
        payload = error.response.json()
    except (ValueError, httpx.ResponseNotRead):
        return None
    message = _message_from_json(payload)
    return ErrorClassification.of(message) if message else None


def decode_nested_message(error: Any) -> Optional[ErrorClassification]:
    for path in NESTED_MESSAGE_PATHS:
        found = _dig(error, path)
        if isinstance(found, str) and found.strip():
            return ErrorClassification.of(unwrap_embedded_message(found.strip()))
    return None


def decode_exception(error: Any) -> Optional[ErrorClassification]:
    if not isinstance(error, BaseException):
        return None
    raw = str(error)
    unwrapped = unwrap_embedded_message(raw)
    if unwrapped != raw:
        return ErrorClassification.of(unwrapped)
    cleaned = _STATUS_PREFIX.sub("", raw).strip()
    return ErrorClassification.of(cleaned or raw or type(error).__name__)


def decode_object(error: Any) -> Optional[ErrorClassification]:
    if isinstance(error, (str, bytes, int, float, bool)) or error is None:
        return None
    try:
        return ErrorClassification.of(
            f"An unexpected error occurred: {json.dumps(error, ensure_ascii=False)}"
        )
    except (TypeError, ValueError):
        return ErrorClassification.of(UNSTRINGIFIABLE_MESSAGE)


def decode_primitive(error: Any) -> Optional[ErrorClassification]:
    if isinstance(error, bytes):
        return ErrorClassification.of(error.decode("utf-8", errors="replace"))
    return ErrorClassification.of(str(error))


DEFAULT_DECODERS: List[Decoder] = [
    decode_cancellation,
    decode_http_status,
    decode_nested_message,
    decode_exception,
    decode_object,
    decode_primitive,
]


def classify_error(error: Any, decoders: Optional[List[Decoder]] = None) -> ErrorClassification:
    """
    归一化任意失败值

    Args:
        error: 捕获到的任意值
        decoders: 自定义解码器链（默认 DEFAULT_DECODERS）

    Returns:
        ErrorClassification
    """
    try:
        for decoder in decoders or DEFAULT_DECODERS:
            result = decoder(error)
            if result is not None:
                return result
    except Exception as e:
        logger.warning(f"错误分类失败: {e}")
    return ErrorClassification.of(ERROR_MESSAGES["UNKNOWN_ERROR"])


def normalize_provider_error(provider: str, status: int, body: str) -> ProviderError:
    """
    根据 HTTP 状态码构造 ProviderError

    Args:
        provider: Provider 名称
        status: HTTP 状态码
        body: 响应体原文

    Returns:
        ProviderError
    """
    if status in (401, 403):
        message = ERROR_MESSAGES["API_KEY_INVALID"].format(provider=provider)
    elif status == 429:
        message = ERROR_MESSAGES["RATE_LIMIT"].format(provider=provider)
    elif status == 404:
        message = ERROR_MESSAGES["MODEL_NOT_FOUND"].format(provider=provider)
    else:
        message = unwrap_embedded_message(body.strip()) if body and body.strip() else (
            f"API request failed with status {status}"
        )
    return ProviderError(message, status=status, provider=provider, body=body)


__all__ = [
    "ErrorClassification",
    "Decoder",
    "DEFAULT_DECODERS",
    "UNSTRINGIFIABLE_MESSAGE",
    "classify_error",
    "unwrap_embedded_message",
    "normalize_provider_error",
    "decode_cancellation",
    "decode_http_status",
    "decode_nested_message",
    "decode_exception",
    "decode_object",
    "decode_primitive",
]
