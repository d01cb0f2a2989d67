import logging

from codeloop.agent.context import GenerationRequest
from codeloop.config import Settings
from codeloop.errors import MissingCredentialsError
from codeloop.gateway import GatewayCaches, gateway_http_client
from codeloop.models.anthropic_client import AnthropicModelClient
from codeloop.models.base import ModelClient
from codeloop.models.openai_client import OpenAIModelClient


logger = logging.getLogger("codeloop.models")

OPENAI_PREFIXES = ("gpt-", "o1", "o3", "o4", "chatgpt-")


def resolve_provider(request: GenerationRequest, model: str) -> str:
    if request.provider:
        return request.provider
    return "openai" if model.startswith(OPENAI_PREFIXES) else "anthropic"


def build_model_client(
    request: GenerationRequest,
    settings: Settings,
    gateway_caches: GatewayCaches | None = None,
) -> ModelClient:
    """Pick and configure a model client, failing fast when credentials are missing."""
    model = request.model or settings.default_model
    provider = resolve_provider(request, model)
    logger.info("model client provider=%s model=%s", provider, model)

    if provider == "gateway":
        if settings.gateway is None:
            raise MissingCredentialsError("Gateway credentials are not configured")
        http_client = gateway_http_client(
            settings.gateway, gateway_caches or GatewayCaches(), default_model=model
        )
        # The gateway authenticates with OAuth; the SDK only needs a placeholder key.
        return AnthropicModelClient(
            model, api_key="gateway", http_client=http_client, max_tokens=settings.max_tokens
        )

    if provider == "openai":
        api_key = request.api_key or settings.openai_api_key
        if not api_key:
            raise MissingCredentialsError("An OpenAI API key is required")
        return OpenAIModelClient(
            model,
            api_key=api_key,
            max_tokens=settings.max_tokens,
            reasoning_effort=request.reasoning_effort,
        )

    api_key = request.api_key or settings.anthropic_api_key
    if not api_key:
        raise MissingCredentialsError("An Anthropic API key is required")
    return AnthropicModelClient(model, api_key=api_key, max_tokens=settings.max_tokens)
