"""Completion provider for grounded answers (OpenAI-compatible Chat API)."""

import logging
from typing import Dict, List, Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


class CompletionProvider:
    """Sends one fully built prompt and returns the completion text.

    Errors from the API propagate; the response composer decides what the
    user sees.
    """

    def __init__(self,
                 api_key: Optional[str],
                 model: str = "gpt-4o-mini",
                 base_url: Optional[str] = None,
                 temperature: float = 0.7,
                 top_p: float = 0.95,
                 max_tokens: int = 1024,
                 timeout: float = 60.0):
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)
        self.model = model
        self.temperature = temperature
        self.top_p = top_p
        self.max_tokens = max_tokens

    def _make_messages(self, prompt: str) -> List[Dict[str, str]]:
        return [{"role": "user", "content": prompt}]

    async def complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=self._make_messages(prompt),
            temperature=self.temperature,
            top_p=self.top_p,
            max_tokens=self.max_tokens,
        )
        text = response.choices[0].message.content or ""
        logger.debug(f"Completion from {self.model}: {len(text)} characters")
        return text
