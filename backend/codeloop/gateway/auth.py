import logging
import time
from collections.abc import Callable
from typing import Any

import httpx
from pydantic import BaseModel

from codeloop.errors import UpstreamProtocolError
from codeloop.gateway.config import MODEL_MAP, REVERSE_MODEL_MAP, GatewayConfig


logger = logging.getLogger("codeloop.gateway")

TOKEN_EXPIRY_MARGIN = 60
DEFAULT_TOKEN_LIFETIME = 3600
DEPLOYMENT_TTL = 5 * 60
CSRF_TTL = 10 * 60

Clock = Callable[[], float]


class CachedToken(BaseModel):
    token: str
    expires_at: float


class CachedDeployment(BaseModel):
    deployment_id: str
    expires_at: float


class CachedCsrf(BaseModel):
    token: str
    cookies: str
    expires_at: float


class TokenManager:
    """OAuth client-credentials tokens, cached per client id until shortly before expiry."""

    def __init__(self, clock: Clock = time.monotonic):
        self._clock = clock
        self._cache: dict[str, CachedToken] = {}

    async def get_token(self, client: httpx.AsyncClient, config: GatewayConfig) -> str:
        cached = self._cache.get(config.client_id)
        if cached is not None and cached.expires_at > self._clock():
            return cached.token

        resp = await client.post(
            config.token_url,
            auth=(config.client_id, config.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if resp.status_code >= 400:
            raise UpstreamProtocolError(
                f"OAuth token request failed ({resp.status_code}): {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )
        data = resp.json()
        token = data.get("access_token")
        if not token:
            raise UpstreamProtocolError("OAuth token response did not include access_token")
        expires_in = int(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        self._cache[config.client_id] = CachedToken(
            token=token, expires_at=self._clock() + expires_in - TOKEN_EXPIRY_MARGIN
        )
        logger.info("fetched gateway token for %s (expires in %ss)", config.client_id, expires_in)
        return token


def deployment_model_name(deployment: dict[str, Any]) -> str | None:
    model = (deployment.get("model") or {}).get("name")
    if model:
        return model
    details = deployment.get("details") or {}
    backend = (details.get("resources") or {}).get("backendDetails") or {}
    return (backend.get("model") or {}).get("name")


def _matches(deployment: dict[str, Any], gateway_model: str) -> bool:
    if deployment.get("status") != "RUNNING":
        return False
    top = (deployment.get("model") or {}).get("name") or ""
    details = deployment.get("details") or {}
    backend = (details.get("resources") or {}).get("backendDetails") or {}
    nested = (backend.get("model") or {}).get("name")
    return top == gateway_model or nested == gateway_model or gateway_model in top


async def list_deployments(
    client: httpx.AsyncClient, config: GatewayConfig, token: str
) -> list[dict[str, Any]]:
    resp = await client.get(
        f"{config.api_url}/v2/lm/deployments",
        headers={
            "Authorization": f"Bearer {token}",
            "AI-Resource-Group": config.resource_group,
        },
    )
    if resp.status_code >= 400:
        raise UpstreamProtocolError(
            f"Deployment list failed ({resp.status_code}): {resp.text}",
            status_code=resp.status_code,
            body=resp.text,
        )
    data = resp.json()
    return data.get("resources") or data.get("deployments") or []


class DeploymentResolver:
    """Maps an external model id to a running gateway deployment id."""

    def __init__(self, tokens: TokenManager, clock: Clock = time.monotonic):
        self._tokens = tokens
        self._clock = clock
        self._cache: dict[str, CachedDeployment] = {}

    async def resolve(self, client: httpx.AsyncClient, config: GatewayConfig, model: str) -> str:
        key = f"{config.client_id}:{model}"
        cached = self._cache.get(key)
        if cached is not None and cached.expires_at > self._clock():
            return cached.deployment_id

        gateway_model = MODEL_MAP.get(model)
        if gateway_model is None:
            raise UpstreamProtocolError(
                f'No gateway model mapping for "{model}". Known models: {", ".join(MODEL_MAP)}'
            )
        token = await self._tokens.get_token(client, config)
        deployments = await list_deployments(client, config, token)
        match = next((d for d in deployments if _matches(d, gateway_model)), None)
        if match is None:
            available = ", ".join(
                deployment_model_name(d) or "unknown"
                for d in deployments
                if d.get("status") == "RUNNING"
            )
            raise UpstreamProtocolError(
                f'No running deployment found for model "{gateway_model}". '
                f"Available: {available or 'none'}"
            )
        deployment_id = str(match["id"])
        self._cache[key] = CachedDeployment(
            deployment_id=deployment_id, expires_at=self._clock() + DEPLOYMENT_TTL
        )
        logger.info("resolved %s -> deployment %s", model, deployment_id)
        return deployment_id


class CsrfManager:
    """CSRF token + session cookies required on gateway POSTs."""

    def __init__(self, clock: Clock = time.monotonic):
        self._clock = clock
        self._cache: dict[str, CachedCsrf] = {}

    @staticmethod
    def _key(config: GatewayConfig) -> str:
        return f"{config.api_url}:{config.resource_group}"

    async def get_token(
        self, client: httpx.AsyncClient, config: GatewayConfig, bearer: str
    ) -> tuple[str, str]:
        key = self._key(config)
        cached = self._cache.get(key)
        if cached is not None and cached.expires_at > self._clock():
            return cached.token, cached.cookies

        resp = await client.get(
            f"{config.api_url}/v2/lm/deployments?$top=1",
            headers={
                "Authorization": f"Bearer {bearer}",
                "AI-Resource-Group": config.resource_group,
                "X-Csrf-Token": "Fetch",
            },
        )
        token = resp.headers.get("x-csrf-token", "")
        cookies = "; ".join(
            value.split(";")[0].strip() for value in resp.headers.get_list("set-cookie")
        )
        if token:
            self._cache[key] = CachedCsrf(
                token=token, cookies=cookies, expires_at=self._clock() + CSRF_TTL
            )
        else:
            logger.warning("gateway returned no CSRF token (status %s)", resp.status_code)
        return token, cookies

    def invalidate(self, config: GatewayConfig) -> None:
        self._cache.pop(self._key(config), None)


class GatewayCaches:
    """The three gateway caches, shared by every request through injection."""

    def __init__(self, clock: Clock = time.monotonic):
        self.tokens = TokenManager(clock)
        self.deployments = DeploymentResolver(self.tokens, clock)
        self.csrf = CsrfManager(clock)


async def list_available_models(
    client: httpx.AsyncClient, config: GatewayConfig, caches: GatewayCaches
) -> list[str]:
    """External model ids that currently have a running deployment."""
    token = await caches.tokens.get_token(client, config)
    models: list[str] = []
    for deployment in await list_deployments(client, config, token):
        if deployment.get("status") != "RUNNING":
            continue
        external = REVERSE_MODEL_MAP.get(deployment_model_name(deployment) or "")
        if external and external not in models:
            models.append(external)
    return models
