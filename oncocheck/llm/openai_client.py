from __future__ import annotations
import os
from typing import Any, Dict, List, Optional, Tuple

from openai import OpenAI


class LLMClient:
    def __init__(self, model: str | None = None, api_key: str | None = None, temperature: float = 0.2):
        self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.temp = temperature
        self.client = OpenAI(api_key=api_key or os.environ.get("OPENAI_API_KEY"))

    def chat_json(self, system_prompt: str, user_text: str, temperature: Optional[float] = None) -> Tuple[str, Dict[str, Any]]:
        """Return (content, meta) for a JSON-object completion; meta carries response_id and usage."""
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_text},
        ]
        resp = self.client.chat.completions.create(
            model=self.model,
            temperature=self.temp if temperature is None else temperature,
            response_format={"type": "json_object"},
            messages=messages,
        )
        out = resp.choices[0].message.content if resp.choices else None
        meta = {
            "response_id": getattr(resp, "id", None),
            "model": getattr(resp, "model", None) or self.model,
            "prompt_tokens": getattr(resp.usage, "prompt_tokens", None),
            "completion_tokens": getattr(resp.usage, "completion_tokens", None),
            "total_tokens": getattr(resp.usage, "total_tokens", None),
        }
        return out or "", meta
