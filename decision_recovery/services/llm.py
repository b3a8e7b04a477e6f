import asyncio
import logging
import os
import random
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx

logger = logging.getLogger("uvicorn.error")

GEMINI_API_BASE_URL = os.getenv("GEMINI_API_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
LLM_PRIMARY_MODEL = os.getenv("LLM_PRIMARY_MODEL", "gemini-2.0-flash").strip()
LLM_FALLBACK_MODELS = [
    name.strip()
    for name in os.getenv("LLM_FALLBACK_MODELS", "gemini-1.5-flash,gemini-1.5-pro,gemini-1.0-pro").split(",")
    if name.strip()
]
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "30"))
LLM_RETRY_COUNT = int(os.getenv("LLM_RETRY_COUNT", "3"))
LLM_RETRY_BACKOFF_SECONDS = float(os.getenv("LLM_RETRY_BACKOFF_SECONDS", "2.0"))
LLM_RETRY_JITTER_SECONDS = float(os.getenv("LLM_RETRY_JITTER_SECONDS", "1.0"))
LLM_DEADLINE_SECONDS = float(os.getenv("LLM_DEADLINE_SECONDS", "45"))

NOT_FOUND = "not_found"
RATE_LIMITED = "rate_limited"
OTHER = "other"


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


def _api_key_from_env() -> str:
    return (os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY") or "").strip()


class ConfigMissing(RuntimeError):
    """No credential for the generation service is configured."""


class GenerationRequestError(RuntimeError):
    def __init__(self, model: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.model = model
        self.status_code = status_code

    @property
    def kind(self) -> str:
        if self.status_code == 404:
            return NOT_FOUND
        if self.status_code == 429:
            return RATE_LIMITED
        return OTHER


class GenerationFailed(RuntimeError):
    def __init__(self, message: str, model: Optional[str] = None):
        super().__init__(message)
        self.model = model


def backoff_delay(
    attempt: int,
    base_seconds: float = LLM_RETRY_BACKOFF_SECONDS,
    jitter_seconds: float = LLM_RETRY_JITTER_SECONDS,
    rng: Callable[[], float] = random.random,
) -> float:
    return base_seconds * (2**attempt) + rng() * jitter_seconds


def extract_text(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""
    first = candidates[0]
    content = first.get("content") if isinstance(first, dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return ""
    return "".join(
        str(part.get("text") or "") for part in parts if isinstance(part, dict)
    ).strip()


class GenerationClient(Protocol):
    @property
    def configured(self) -> bool:
        ...

    async def generate(
        self, prompt: str, system_instruction: str, max_output_tokens: int, temperature: float
    ) -> str:
        ...


class GeminiGateway:
    """Sends one prompt to the Gemini API, walking the model list until one answers.

    Not-found models are skipped at once, rate-limited models are retried with
    exponential backoff, anything else moves on to the next model. The whole
    call is bounded by ``deadline_seconds``.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        models: Optional[list[str]] = None,
        retry_count: int = LLM_RETRY_COUNT,
        backoff_seconds: float = LLM_RETRY_BACKOFF_SECONDS,
        jitter_seconds: float = LLM_RETRY_JITTER_SECONDS,
        deadline_seconds: float = LLM_DEADLINE_SECONDS,
        base_url: str = GEMINI_API_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.api_key = _api_key_from_env() if api_key is None else api_key.strip()
        self.models = list(models) if models is not None else [LLM_PRIMARY_MODEL, *LLM_FALLBACK_MODELS]
        self.retry_count = max(1, retry_count)
        self.backoff_seconds = backoff_seconds
        self.jitter_seconds = jitter_seconds
        self.deadline_seconds = deadline_seconds
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._sleep = sleep
        self._rng = rng

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def generate(
        self, prompt: str, system_instruction: str, max_output_tokens: int, temperature: float
    ) -> str:
        if not self.configured:
            raise ConfigMissing("GEMINI_API_KEY is not set")
        try:
            return await asyncio.wait_for(
                self._generate_with_fallback(prompt, system_instruction, max_output_tokens, temperature),
                timeout=self.deadline_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("gateway_deadline_exceeded deadline=%s", self.deadline_seconds)
            raise GenerationFailed(f"Generation exceeded {self.deadline_seconds}s deadline") from exc

    async def _generate_with_fallback(
        self, prompt: str, system_instruction: str, max_output_tokens: int, temperature: float
    ) -> str:
        last_error: Optional[GenerationRequestError] = None
        async with httpx.AsyncClient(timeout=_http_timeout(), transport=self._transport) as client:
            for model in self.models:
                for attempt in range(self.retry_count):
                    try:
                        return await self._request(
                            client, model, prompt, system_instruction, max_output_tokens, temperature
                        )
                    except GenerationRequestError as exc:
                        last_error = exc
                        if exc.kind == NOT_FOUND:
                            logger.warning("gateway_model_not_found model=%s", model)
                            break
                        if exc.kind == RATE_LIMITED:
                            if attempt >= self.retry_count - 1:
                                logger.warning("gateway_rate_limit_exhausted model=%s attempts=%s", model, attempt + 1)
                                break
                            delay = backoff_delay(attempt, self.backoff_seconds, self.jitter_seconds, self._rng)
                            logger.warning(
                                "gateway_rate_limited model=%s attempt=%s/%s delay=%.2f",
                                model,
                                attempt + 1,
                                self.retry_count,
                                delay,
                            )
                            await self._sleep(delay)
                            continue
                        logger.error("gateway_model_error model=%s detail=%s", model, str(exc))
                        break
        if last_error is None:
            raise GenerationFailed("No generation models configured")
        raise GenerationFailed(str(last_error), model=last_error.model) from last_error

    async def _request(
        self,
        client: httpx.AsyncClient,
        model: str,
        prompt: str,
        system_instruction: str,
        max_output_tokens: int,
        temperature: float,
    ) -> str:
        try:
            response = await client.post(
                f"{self.base_url}/models/{model}:generateContent",
                params={"key": self.api_key},
                headers={"Content-Type": "application/json"},
                json={
                    "systemInstruction": {"parts": [{"text": system_instruction}]},
                    "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                    "generationConfig": {"maxOutputTokens": max_output_tokens, "temperature": temperature},
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = (exc.response.text or "").strip()[:220]
            raise GenerationRequestError(
                model=model,
                status_code=status,
                message=f"Gemini request failed (status={status}): {detail or 'no response body'}",
            ) from exc
        except httpx.HTTPError as exc:
            raise GenerationRequestError(model=model, message=f"Gemini request failed: {str(exc)[:220]}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise GenerationRequestError(model=model, message="Gemini returned a non-JSON body") from exc
        text = extract_text(data)
        if not text:
            raise GenerationRequestError(model=model, message="Gemini returned no text output")
        return text


def fetch_available_models(api_key: str, base_url: str = GEMINI_API_BASE_URL) -> list[str]:
    """Model ids visible to ``api_key`` that support generateContent."""
    response = httpx.get(f"{base_url.rstrip('/')}/models", params={"key": api_key}, timeout=8.0)
    response.raise_for_status()
    data = response.json()
    names: list[str] = []
    for item in data.get("models", []):
        methods = item.get("supportedGenerationMethods") or []
        if "generateContent" not in methods:
            continue
        model_id = str(item.get("name", "")).strip().split("/")[-1]
        if model_id:
            names.append(model_id)
    return sorted(set(names))


def get_generation_client() -> GenerationClient:
    return GeminiGateway()
