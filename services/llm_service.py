# services/llm_service.py
import asyncio
import requests
import logging
from typing import Any, Dict, List, Optional

from config import settings
from core.domain import ProviderErrorCode
from core.exceptions import CompletionProviderError
from core.interfaces import ICompletionProvider
from utils.common import parse_provider_error

logger = logging.getLogger(settings.LOGGER_NAME)


class LLMService(ICompletionProvider):
    """
    Chat completion client for a local Ollama server or any
    OpenAI-compatible `/chat/completions` endpoint.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        provider: str = "ollama",
        api_key: Optional[str] = None,
        max_tokens: int = settings.LLM_MAX_TOKENS,
        temperature: float = settings.LLM_TEMPERATURE,
        timeout: int = settings.REQUEST_TIMEOUT,
    ):
        """
        Initializes the LLMService.

        Args:
            base_url: The base URL of the LLM API.
            model: The name of the model to use.
            provider: "ollama" or "openai".
            timeout: The request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.provider = provider
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout

    def _request(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.provider == "openai":
            url = f"{self.base_url}/chat/completions"
            body: Dict[str, Any] = {
                "model": self.model,
                "messages": messages,
                "max_tokens": self.max_tokens,
                "temperature": self.temperature,
            }
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
        else:
            url = f"{self.base_url}/api/chat"
            body = {
                "model": self.model,
                "messages": messages,
                "stream": False,
                "options": {"num_predict": self.max_tokens, "temperature": self.temperature},
            }

        try:
            response = requests.post(url, json=body, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.error(f"LLM request timed out after {self.timeout} seconds.")
            raise CompletionProviderError("LLM request timed out", code=ProviderErrorCode.TIMEOUT) from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Cannot connect to LLM at {self.base_url}. Is the service running?")
            raise CompletionProviderError(
                "Cannot connect to LLM service", code=ProviderErrorCode.UNAVAILABLE
            ) from e

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            code = ProviderErrorCode.from_string(parse_provider_error(response.status_code, payload))
            message = response.text
            if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
                message = payload["error"].get("message") or message
            logger.error(f"LLM service returned an error: {response.status_code} {message}")
            raise CompletionProviderError(message, code=code, status_code=response.status_code)

        return response.json()

    @staticmethod
    def _extract_text(result: Dict[str, Any]) -> str:
        if "choices" in result:
            choices = result.get("choices") or []
            if choices:
                return ((choices[0].get("message") or {}).get("content") or "").strip()
            return ""
        return ((result.get("message") or {}).get("content") or "").strip()

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        """Sends role/content messages to the LLM and returns the reply text."""
        logger.info(f"Sending {len(messages)} messages to LLM model '{self.model}'...")
        result = await asyncio.to_thread(self._request, messages)
        answer = self._extract_text(result)
        if not answer:
            logger.warning("LLM response was empty or malformed.")
            return ""
        logger.info("Successfully received response from LLM.")
        return answer
