"""
Model router: sends a PromptBundle to one of four LLM providers.

Three providers speak the OpenAI chat-completions shape (OpenAI, DeepSeek,
OpenRouter) and go through the openai SDK pointed at their base URL; Gemini
uses generateContent over plain httpx. Every adapter needs its own API
key and fails fast without one.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import httpx
from openai import APIConnectionError, APIStatusError, AsyncOpenAI
from pydantic import BaseModel, ConfigDict, ValidationError

from essayflow.cancellation import CancellationToken, run_cancellable
from essayflow.config import ProviderCredentials, Settings
from essayflow.errors import MalformedModelOutput, MissingApiKeyError, ProviderError
from essayflow.schema import AIProvider, ModelReply, ModelSettings, PromptBundle

logger = logging.getLogger(__name__)

GRADING_TEMPERATURE = 0.4


@dataclass(frozen=True)
class ProviderSpec:
    provider: AIProvider
    label: str
    transport: str  # "openai" or "gemini"
    default_model: str


PROVIDERS: Dict[AIProvider, ProviderSpec] = {
    AIProvider.OPENAI: ProviderSpec(AIProvider.OPENAI, "OpenAI", "openai", "gpt-4o-mini"),
    AIProvider.GEMINI: ProviderSpec(AIProvider.GEMINI, "Gemini", "gemini", "gemini-2.5-flash"),
    AIProvider.DEEPSEEK: ProviderSpec(AIProvider.DEEPSEEK, "DeepSeek", "openai", "deepseek-chat"),
    AIProvider.OPENROUTER: ProviderSpec(AIProvider.OPENROUTER, "OpenRouter", "openai", "openai/gpt-4o-mini"),
}

MODEL_OPTIONS: List[ModelSettings] = [
    ModelSettings(provider=spec.provider, model=spec.default_model) for spec in PROVIDERS.values()
]

DEFAULT_MODEL = MODEL_OPTIONS[0]


def resolve_provider(provider: Union[AIProvider, str, None]) -> ProviderSpec:
    """Unknown providers fall back to OpenAI."""
    try:
        return PROVIDERS[AIProvider(provider)]
    except ValueError:
        logger.warning(f"Unknown provider {provider!r}; falling back to OpenAI")
        return PROVIDERS[AIProvider.OPENAI]


def default_model_for(provider: Union[AIProvider, str]) -> str:
    return resolve_provider(provider).default_model


# --- Response shapes -------------------------------------------------------

class ContentPart(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    text: Optional[str] = None


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    # Plain string, or a list of typed parts (some compatible providers).
    content: Union[str, List[ContentPart], None] = None


class ChatChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    message: ChatMessage


class ChatCompletionResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    choices: List[ChatChoice] = []


class GeminiPart(BaseModel):
    model_config = ConfigDict(extra="allow")

    text: Optional[str] = None


class GeminiContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    parts: List[GeminiPart] = []


class GeminiCandidate(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: Optional[GeminiContent] = None


class GenerateContentResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    candidates: List[GeminiCandidate] = []


def extract_chat_text(payload: Any, label: str) -> str:
    """First choice's text from a chat-completions response."""
    try:
        parsed = ChatCompletionResponse.model_validate(payload)
    except ValidationError as e:
        raise ProviderError(label, f"{label} returned unsupported content format") from e

    content = parsed.choices[0].message.content if parsed.choices else None
    if not content:
        raise ProviderError(label, f"No response from {label}")
    if isinstance(content, str):
        return content
    for part in content:
        if part.type == "text" and part.text:
            return part.text
    raise ProviderError(label, f"{label} returned unsupported content format")


def extract_gemini_text(payload: Any, label: str) -> str:
    """First text part of the first candidate from a generateContent response."""
    try:
        parsed = GenerateContentResponse.model_validate(payload)
    except ValidationError as e:
        raise ProviderError(label, f"{label} returned unsupported content format") from e

    if parsed.candidates and parsed.candidates[0].content:
        for part in parsed.candidates[0].content.parts:
            if part.text:
                return part.text
    raise ProviderError(label, f"{label} returned unsupported content format")


def _error_detail(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict) and error.get("message"):
        return error["message"]
    return payload.get("message")


_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def parse_model_reply(text: str) -> ModelReply:
    """
    Parse the model's JSON reply.

    Only the presence and basic types of fields are checked; the score is
    trusted as returned.

    Raises:
        MalformedModelOutput: not JSON, or no usable gradingResult
    """
    cleaned = (text or "").strip()
    fenced = _FENCE_RE.match(cleaned)
    if fenced:
        cleaned = fenced.group(1)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise MalformedModelOutput(f"Model response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedModelOutput("Model response is not a JSON object")
    try:
        return ModelReply.model_validate(data)
    except ValidationError as e:
        raise MalformedModelOutput(f"Model response is missing grading fields: {e.errors()[0]['msg']}") from e


# --- Router ----------------------------------------------------------------

class ModelRouter:
    """
    Dispatch grading prompts to the configured provider.

    Usage:
        router = ModelRouter(Settings.from_env())
        raw_json = await router.grade(bundle, ModelSettings(provider="gemini", model="gemini-2.5-flash"))
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        self.settings = settings
        self._client = client
        self._timeout = timeout

    def _credentials(self, provider: AIProvider) -> ProviderCredentials:
        return {
            AIProvider.OPENAI: self.settings.openai,
            AIProvider.DEEPSEEK: self.settings.deepseek,
            AIProvider.GEMINI: self.settings.gemini,
            AIProvider.OPENROUTER: self.settings.openrouter,
        }[provider]

    def _extra_headers(self, provider: AIProvider) -> Dict[str, str]:
        if provider == AIProvider.OPENROUTER:
            return {"HTTP-Referer": self.settings.app_url, "X-Title": self.settings.app_name}
        return {}

    async def grade(
        self,
        bundle: PromptBundle,
        model: ModelSettings,
        token: Optional[CancellationToken] = None,
    ) -> str:
        """
        Send the prompt and return the raw text the model produced (expected to be JSON).

        Raises:
            MissingApiKeyError: the provider has no key; no request is made
            ProviderError: non-2xx response, transport failure, or unusable response shape
            ProcessingCancelled: the token was cancelled before or during the call
        """
        if token is not None:
            token.raise_if_cancelled()

        spec = resolve_provider(model.provider)
        credentials = self._credentials(spec.provider)
        if not credentials.api_key:
            raise MissingApiKeyError(spec.label)
        model_id = model.model or spec.default_model

        logger.info(f"🤖 Grading with {spec.label}:{model_id}")
        if spec.transport == "gemini":
            return await self._run_gemini(bundle, spec, credentials, model_id, token)
        return await self._run_openai_style(bundle, spec, credentials, model_id, token)

    async def _post(
        self,
        spec: ProviderSpec,
        url: str,
        token: Optional[CancellationToken],
        **kwargs,
    ) -> Any:
        async def send(client: httpx.AsyncClient) -> httpx.Response:
            return await run_cancellable(client.post(url, **kwargs), token)

        try:
            if self._client is not None:
                response = await send(self._client)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await send(client)
        except httpx.HTTPError as e:
            raise ProviderError(spec.label, f"{spec.label} request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.is_success:
            raise ProviderError(
                spec.label,
                _error_detail(payload) or f"{spec.label} request failed",
                status_code=response.status_code,
            )
        return payload

    def _openai_client(self, spec: ProviderSpec, credentials: ProviderCredentials) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=credentials.api_key,
            base_url=credentials.base_url,
            timeout=self._timeout,
            max_retries=0,
            default_headers=self._extra_headers(spec.provider) or None,
            http_client=self._client,
        )

    async def _run_openai_style(
        self,
        bundle: PromptBundle,
        spec: ProviderSpec,
        credentials: ProviderCredentials,
        model_id: str,
        token: Optional[CancellationToken],
    ) -> str:
        user_content: List[dict] = [{"type": "text", "text": bundle.user_prompt}]
        if bundle.image is not None:
            user_content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{bundle.image.mime_type};base64,{bundle.image.base64}"},
                }
            )

        client = self._openai_client(spec, credentials)
        try:
            # Raw response: compatible providers may send list-shaped content the SDK types don't model
            raw = await run_cancellable(
                client.chat.completions.with_raw_response.create(
                    model=model_id,
                    messages=[
                        {"role": "system", "content": bundle.system_prompt},
                        {"role": "user", "content": user_content},
                    ],
                    temperature=GRADING_TEMPERATURE,
                    response_format={"type": "json_object"},
                ),
                token,
            )
        except APIStatusError as e:
            raise ProviderError(
                spec.label,
                _error_detail(e.body) or f"{spec.label} request failed",
                status_code=e.status_code,
            ) from e
        except APIConnectionError as e:
            raise ProviderError(spec.label, f"{spec.label} request failed: {e}") from e
        finally:
            if self._client is None:
                await client.close()

        try:
            payload = raw.http_response.json()
        except ValueError:
            payload = None
        return extract_chat_text(payload, spec.label)

    async def _run_gemini(
        self,
        bundle: PromptBundle,
        spec: ProviderSpec,
        credentials: ProviderCredentials,
        model_id: str,
        token: Optional[CancellationToken],
    ) -> str:
        parts: List[dict] = [{"text": bundle.user_prompt}]
        if bundle.image is not None:
            parts.append({"inline_data": {"mime_type": bundle.image.mime_type, "data": bundle.image.base64}})
        body = {
            "system_instruction": {"parts": [{"text": bundle.system_prompt}]},
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": GRADING_TEMPERATURE,
                "response_mime_type": "application/json",
            },
        }
        payload = await self._post(
            spec,
            f"{credentials.base_url.rstrip('/')}/models/{model_id}:generateContent",
            token,
            json=body,
            # key goes in a header; request URLs end up in logs
            headers={"Content-Type": "application/json", "x-goog-api-key": credentials.api_key},
        )
        return extract_gemini_text(payload, spec.label)
