from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
import httpx
import structlog

from forge_agent.domain.errors import ModelProviderError


logger = structlog.get_logger(__name__)


class CompletionClient(ABC):
    """Black-box chat completion provider"""

    @abstractmethod
    async def complete(self, request: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        """Send a chat completion request body and return the decoded response.

        Raises ModelProviderError on transport failures and non-2xx responses.
        """
        pass

    async def close(self) -> None:
        pass


class OpenAICompletionClient(CompletionClient):
    """Chat completions over the OpenAI-compatible HTTP API"""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=httpx.Timeout(self._timeout_seconds, connect=10.0),
            )
        return self._client

    async def complete(self, request: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        client = self._get_client()
        kwargs: Dict[str, Any] = {"json": request}
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            response = await client.post("/chat/completions", **kwargs)
        except httpx.RequestError as e:
            logger.error("Completion request failed", model=request.get("model"), error=str(e))
            raise ModelProviderError(f"OpenAI API request failed: {e}") from e

        if not response.is_success:
            body = response.text
            raise ModelProviderError(
                f"OpenAI API error: {response.status_code} - {body}",
                status_code=response.status_code,
                body=body,
            )

        return response.json()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
