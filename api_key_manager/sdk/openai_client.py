"""
Droplet-side OpenAI client wrapper.

Fetches the OpenAI key from the key service instead of hardcoding it and
reports token usage back after every call.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..service.handlers import KeyService


class KeyServiceError(Exception):
    """Raised when the key service refuses a credential or usage request."""
    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class KeyedOpenAI:
    """OpenAI client that always uses the currently issued credential.

    The underlying OpenAI client is rebuilt whenever the service hands out
    a different key, so rotations take effect on the next call. All
    failures are loud.
    """

    def __init__(
        self,
        service: KeyService,
        model: str,
        droplet: str,
        provider: str = "openai"
    ):
        """Initialize keyed OpenAI client.

        Args:
            service: Key service issuing credentials (required)
            model: OpenAI model name (required)
            droplet: Name reported with usage (required)
            provider: Provider identifier the key is stored under

        Raises:
            ValueError: If model or droplet is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not droplet or not droplet.strip():
            raise ValueError("droplet is required and cannot be empty")

        self.service = service
        self.model = model
        self.droplet = droplet
        self.provider = provider
        self.client: Optional[OpenAI] = None
        self._api_key: Optional[str] = None

    def current_client(self) -> OpenAI:
        """Return an OpenAI client bound to the key the service issues now.

        Raises:
            KeyServiceError: If the service cannot issue a key
        """
        status_code, payload = self.service.get_credential(self.provider, client=self.droplet)
        if status_code != 200:
            raise KeyServiceError(payload.get("error", "credential unavailable"), status_code)

        key = payload["key"]
        if self.client is None or key != self._api_key:
            self.client = OpenAI(api_key=key)
            self._api_key = key
        return self.client

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create chat completion and report its token usage.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response

        Raises:
            ValueError: If messages is empty or the response lacks usage
            KeyServiceError: If the key service rejects a request
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        client = self.current_client()
        response = client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        status_code, payload = self.service.record_usage(self.provider, {
            "tokens": usage.total_tokens,
            "droplet": self.droplet,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        if status_code != 200:
            raise KeyServiceError(payload.get("error", "usage report rejected"), status_code)

        return response
