"""
Gemini Provider - Google Generative Language REST API

流式接口: models/{model}:streamGenerateContent?alt=sse
- candidates[0].content.parts[].text 为可见文本
- thought=True 的 part 为推理文本（启用 includeThoughts 时返回）
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
from .openai_compatible import parse_sse_data

logger = logging.getLogger(__name__)


def iter_parts(chunk: Dict[str, Any]) -> List[Dict[str, Any]]:
    candidates = chunk.get("candidates") or []
    if not candidates:
        return []
    content = candidates[0].get("content") or {}
    return content.get("parts") or []


class GeminiProvider(BaseLLMProvider):
    """Google Gemini"""

    name = LLMProvider.GEMINI

    def __init__(
        self,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0
    ):
        super().__init__(client=client, timeout=timeout)
        self.base_url = base_url.rstrip("/")

    def _headers(self, api_key: Optional[str]) -> Dict[str, str]:
        return {
            "x-goog-api-key": api_key or "",
            "Content-Type": "application/json"
        }

    def build_payload(self, request: CompletionRequest) -> Dict[str, Any]:
        system_prompt, history = self.prepare_prompt(request)
        contents = [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}]
            }
            for m in history
        ]
        if request.prefill:
            # 以模型回合的开头引导回复
            contents.append({"role": "model", "parts": [{"text": request.prefill}]})

        generation_config: Dict[str, Any] = {"temperature": request.temperature}
        if request.max_output_tokens > 0:
            generation_config["maxOutputTokens"] = request.max_output_tokens
        if request.reasoning_enabled:
            generation_config["thinkingConfig"] = {"includeThoughts": True}

        return {
            "contents": contents,
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "generationConfig": generation_config
        }

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError as e:
            logger.error(f"读取错误响应体失败: {e}")
            body = "(Could not read error body)"
        logger.error(f"❌ Gemini 请求失败: status={response.status_code}, body={body[:500]}")
        raise normalize_provider_error(self.name.value, response.status_code, body)

    async def stream_chat(
        self,
        request: CompletionRequest,
        token: Optional[CancellationToken] = None
    ) -> AsyncIterator[str]:
        url = f"{self.base_url}/models/{request.model}:streamGenerateContent"
        payload = self.build_payload(request)
        client, owned = self._get_client()
        thoughts: List[str] = []

        logger.info(f"🚀 Gemini 流式请求: model={request.model}, turns={len(payload['contents'])}")
        try:
            async with client.stream(
                "POST",
                url,
                params={"alt": "sse"},
                headers=self._headers(request.api_key),
                json=payload
            ) as response:
                await self._raise_for_status(response)
                async for line in response.aiter_lines():
                    if token is not None and token.is_cancelled:
                        logger.info("Gemini 流式生成被用户停止")
                        break
                    data = parse_sse_data(line)
                    if not data:
                        continue
                    try:
                        chunk = json.loads(data)
                    except ValueError:
                        logger.error(f"无法解析流式 JSON 片段: {data[:200]}")
                        continue
                    for part in iter_parts(chunk):
                        text = part.get("text")
                        if not text:
                            continue
                        if part.get("thought"):
                            thoughts.append(text)
                        else:
                            yield text
        except httpx.TransportError as e:
            logger.error(f"❌ Gemini 网络错误: {e}")
            raise ProviderError(ERROR_MESSAGES["NETWORK_ERROR"], provider=self.name.value) from e
        finally:
            if owned:
                await client.aclose()

        if thoughts:
            yield REASONING_MARKER + "".join(thoughts)

    async def summarize(
        self,
        api_key: Optional[str],
        model: str,
        messages: List[Message]
    ) -> str:
        url = f"{self.base_url}/models/{model}:generateContent"
        payload = {
            "contents": [
                {"role": "user", "parts": [{"text": build_summary_prompt(messages)}]}
            ],
            "systemInstruction": {"parts": [{"text": SUMMARY_SYSTEM_PROMPT}]},
            "generationConfig": {"temperature": SUMMARY_TEMPERATURE}
        }
        client, owned = self._get_client()
        try:
            response = await client.post(url, headers=self._headers(api_key), json=payload)
            if response.status_code >= 400:
                raise normalize_provider_error(self.name.value, response.status_code, response.text)
            data = response.json()
        except httpx.TransportError as e:
            raise ProviderError(ERROR_MESSAGES["NETWORK_ERROR"], provider=self.name.value) from e
        finally:
            if owned:
                await client.aclose()

        text = "".join(
            part.get("text", "") for part in iter_parts(data) if not part.get("thought")
        )
        return text.strip()


__all__ = ["GeminiProvider", "iter_parts"]
