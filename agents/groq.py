"""
Groq Provider - Облачный инференс
=================================

[API] OpenAI-совместимый endpoint:
    POST {base_url}/chat/completions
    Authorization: Bearer <GROQ_API_KEY>

[ERRORS]
- 429 -> InferenceError(rate_limited=True)
- прочие не-200 и сетевые ошибки -> InferenceError
- пустой ответ модели -> "" (не ошибка)

[CONFIG] Переменные окружения:
- GROQ_API_KEY: ключ API
- GROQ_BASE_URL: адрес API (по умолчанию https://api.groq.com/openai/v1)
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from core.protocol import InferenceParams

from .base import InferenceError, InferenceProvider

logger = logging.getLogger(__name__)


DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
REQUEST_TIMEOUT = 60


class GroqProvider(InferenceProvider):
    """
    Провайдер Groq Chat Completions.

    [USAGE]
    ```python
    provider = GroqProvider(api_key=config.inference.groq_api_key)
    text = await provider.complete("Hello", InferenceParams(model="llama3-8b-8192"))
    await provider.close()
    ```
    """

    name = "groq"

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = REQUEST_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        if not api_key:
            raise ValueError("GROQ_API_KEY is required for the groq provider")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def build_body(self, messages: List[Dict[str, str]], params: InferenceParams) -> Dict[str, Any]:
        """Тело запроса chat/completions."""
        body: Dict[str, Any] = {
            "messages": messages,
            "model": params.model,
            "temperature": params.temperature,
            "max_tokens": params.max_tokens,
            "top_p": params.top_p,
            "stream": False,
        }
        if params.top_k is not None:
            body["top_k"] = params.top_k
        if params.frequency_penalty is not None:
            body["frequency_penalty"] = params.frequency_penalty
        return body

    @staticmethod
    def parse_response(data: Any) -> str:
        """Извлечь choices[0].message.content ("" если его нет)."""
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return ""
        return content if isinstance(content, str) else ""

    async def chat(self, messages: List[Dict[str, str]], params: InferenceParams) -> str:
        url = f"{self.base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        body = self.build_body(messages, params)

        session = await self._get_session()
        try:
            async with session.post(url, json=body, headers=headers) as response:
                if response.status == 429:
                    text = await response.text()
                    raise InferenceError(f"Groq rate limited: {text[:200]}", rate_limited=True)
                if response.status != 200:
                    text = await response.text()
                    raise InferenceError(f"Groq error ({response.status}): {text[:200]}")
                try:
                    data = await response.json()
                except ValueError as e:
                    raise InferenceError("Groq returned invalid JSON") from e
        except asyncio.TimeoutError as e:
            raise InferenceError(f"Groq request timeout after {self.timeout}s") from e
        except aiohttp.ClientConnectorError as e:
            raise InferenceError(f"Groq API unreachable at {self.base_url}") from e
        except aiohttp.ClientError as e:
            raise InferenceError(f"Connection error: {e}") from e

        content = self.parse_response(data)
        logger.debug(f"[GROQ] {params.model}: {len(content)} chars")
        return content

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
