import asyncio
from typing import Dict, List, Optional
from openai import OpenAI
from lib.config import get_settings
from lib.error_handler import ProviderError


class OpenAIClient:
    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None):
        settings = get_settings()
        self.client = client or OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.openai_timeout_seconds
        )
        self.model = model or settings.openai_model

    async def complete(
        self,
        system_prompt: str,
        turn_history: List[Dict[str, str]],
        user_turn: str,
        max_tokens: int,
        temperature: float,
        json_mode: bool = False
    ) -> str:
        """
        Run a chat completion and return the text of the first choice.

        The blocking SDK call runs in the default executor so callers can be
        cancelled by the request deadline.
        """
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(turn_history)
        messages.append({"role": "user", "content": user_turn})

        kwargs = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(
                None,
                lambda: self.client.chat.completions.create(**kwargs)
            )
        except Exception as e:
            raise ProviderError(f"Completion failed: {str(e)}")

        if not response.choices:
            raise ProviderError("Completion returned no choices")
        return (response.choices[0].message.content or "").strip()
