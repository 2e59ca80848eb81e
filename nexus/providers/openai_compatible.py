"""
OpenAI 兼容 Provider（OpenRouter / DeepSeek）

流式响应为 SSE：每行 `data: {json}`，以 `data: [DONE]` 结束。
choices[0].delta.content 为可见文本；reasoning_content / reasoning 为推理文本，
先缓存，回复结束后以 REASONING_MARKER 为前缀整体输出。
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from nexus.models.message import Message
from nexus.services.cancellation import CancellationToken
from nexus.services.error_classifier import normalize_provider_error
from nexus.services.errors import ERROR_MESSAGES, ProviderError
from .base import (
    REASONING_MARKER,
    SUMMARY_SYSTEM_PROMPT,
    SUMMARY_TEMPERATURE,
    BaseLLMProvider,
    CompletionRequest,
    LLMProvider,
    build_summary_prompt,
)

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data: "
SSE_DONE = "[DONE]"


def parse_sse_data(line: str) -> Optional[str]:
    """
    提取 SSE data 行的负载

    Returns:
        负载字符串；非 data 行返回 None
    """
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    return line[len(SSE_DATA_PREFIX):].strip()


def extract_delta(chunk: Dict[str, Any]) -> Dict[str, Any]:
    choices = chunk.get("choices") or []
    if not choices:
        return {}
    return choices[0].get("delta") or {}


class OpenAICompatibleProvider(BaseLLMProvider):
    """OpenAI Chat Completions 兼容的 Provider"""

    def __init__(
        self,
        name: LLMProvider,
        endpoint: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0
    ):
        super().__init__(client=client, timeout=timeout)
        self.name = name
        self.endpoint = endpoint

    def _headers(self, api_key: Optional[str]) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key or ''}",
            "Content-Type": "application/json"
        }

    def build_payload(self, request: CompletionRequest) -> Dict[str, Any]:
        system_prompt, history = self.prepare_prompt(request)
        messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": m.role, "content": m.content} for m in history)
        if request.prefill:
            messages.append({"role": "assistant", "content": request.prefill})

        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
            "stream": True
        }
        if request.max_output_tokens > 0:
            payload["max_tokens"] = request.max_output_tokens
        if request.reasoning_enabled and self.name == LLMProvider.OPENROUTER:
            payload["reasoning"] = {"enabled": True}
        return payload

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError as e:
            logger.error(f"读取错误响应体失败: {e}")
            body = "(Could not read error body)"
        logger.error(
            f"❌ {self.name.value} 请求失败: status={response.status_code}, body={body[:500]}"
        )
        raise normalize_provider_error(self.name.value, response.status_code, body)

    async def stream_chat(
        self,
        request: CompletionRequest,
        token: Optional[CancellationToken] = None
    ) -> AsyncIterator[str]:
        payload = self.build_payload(request)
        client, owned = self._get_client()
        reasoning_parts: List[str] = []

        logger.info(
            f"🚀 {self.name.value} 流式请求: model={request.model}, "
            f"messages={len(payload['messages'])}"
        )
        try:
            async with client.stream(
                "POST",
                self.endpoint,
                headers=self._headers(request.api_key),
                json=payload
            ) as response:
                await self._raise_for_status(response)
                async for line in response.aiter_lines():
                    if token is not None and token.is_cancelled:
                        break
                    data = parse_sse_data(line)
                    if data is None or not data:
                        continue
                    if data == SSE_DONE:
                        break
                    try:
                        chunk = json.loads(data)
                    except ValueError:
                        logger.error(f"无法解析流式 JSON 片段: {data[:200]}")
                        continue
                    if isinstance(chunk.get("error"), dict):
                        raise ProviderError(
                            chunk["error"].get("message") or ERROR_MESSAGES["UNKNOWN_ERROR"],
                            provider=self.name.value,
                            body=data
                        )
                    delta = extract_delta(chunk)
                    reasoning = delta.get("reasoning_content") or delta.get("reasoning")
                    if reasoning:
                        reasoning_parts.append(reasoning)
                    content = delta.get("content")
                    if content:
                        yield content
        except httpx.TransportError as e:
            logger.error(f"❌ {self.name.value} 网络错误: {e}")
            raise ProviderError(ERROR_MESSAGES["NETWORK_ERROR"], provider=self.name.value) from e
        finally:
            if owned:
                await client.aclose()

        if reasoning_parts:
            yield REASONING_MARKER + "".join(reasoning_parts)

    async def summarize(
        self,
        api_key: Optional[str],
        model: str,
        messages: List[Message]
    ) -> str:
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": build_summary_prompt(messages)}
            ],
            "temperature": SUMMARY_TEMPERATURE
        }
        client, owned = self._get_client()
        try:
            response = await client.post(self.endpoint, headers=self._headers(api_key), json=payload)
            if response.status_code >= 400:
                raise normalize_provider_error(self.name.value, response.status_code, response.text)
            data = response.json()
        except httpx.TransportError as e:
            raise ProviderError(ERROR_MESSAGES["NETWORK_ERROR"], provider=self.name.value) from e
        finally:
            if owned:
                await client.aclose()

        try:
            summary = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(
                "Failed to generate summary: no content in response.",
                provider=self.name.value,
                body=json.dumps(data, ensure_ascii=False)
            ) from e
        return (summary or "").strip()


__all__ = ["OpenAICompatibleProvider", "parse_sse_data", "extract_delta"]
