import httpx

from ai.providers.base import (
    AIProvider,
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitedError,
    ProviderUnavailableError,
)


class GoogleProvider(AIProvider):
    """Google Gemini AI provider."""

    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
    DEFAULT_MODEL = "gemini-1.5-pro"

    def __init__(self, api_key: str, model: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(api_key, model)
        self._transport = transport

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _endpoint(self, model: str) -> str:
        return f"{self.BASE_URL}/{model}:generateContent"

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code == 200:
            return
        body = resp.text[:500]
        message = ""
        try:
            message = resp.json().get("error", {}).get("message", "")
        except ValueError:
            pass
        message = message or body
        # Gemini reports bad keys as 400 INVALID_ARGUMENT with "API key" in the message.
        if resp.status_code in (401, 403) or (resp.status_code == 400 and "api key" in message.lower()):
            raise ProviderAuthError(f"Google API key rejected: {message}", resp.status_code)
        if resp.status_code == 429:
            raise ProviderRateLimitedError(f"Google API quota exceeded: {message}", resp.status_code)
        if resp.status_code >= 500:
            raise ProviderUnavailableError(f"Google API unavailable: {message}", resp.status_code)
        raise ProviderError(f"Google API error: {message}", resp.status_code)

    # ------------------------------------------------------------------
    # generate
    # ------------------------------------------------------------------
    async def generate(self, prompt: str, *, system: str = "", model: str | None = None) -> dict:
        model = model or self.get_model()
        payload: dict = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        }
        if system:
            payload["system_instruction"] = {
                "parts": [{"text": system}],
            }

        try:
            async with self._client(timeout=120) as client:
                resp = await client.post(
                    self._endpoint(model),
                    headers={"Content-Type": "application/json", "x-goog-api-key": self.api_key},
                    json=payload,
                )
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(f"Google API request failed: {exc.__class__.__name__}") from exc

        self._raise_for_status(resp)
        data = resp.json()

        # Extract text from response
        content = ""
        candidates = data.get("candidates", [])
        if candidates:
            parts = candidates[0].get("content", {}).get("parts", [])
            for part in parts:
                content += part.get("text", "")
        if not content.strip():
            raise ProviderUnavailableError("Google API returned an empty response")

        usage = data.get("usageMetadata", {})
        return {
            "content": content,
            "tokens_in": usage.get("promptTokenCount", 0),
            "tokens_out": usage.get("candidatesTokenCount", 0),
            "model": model,
        }
