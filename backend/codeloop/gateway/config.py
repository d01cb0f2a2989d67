from pydantic import BaseModel


ANTHROPIC_VERSION = "bedrock-2023-05-31"

# External model id -> gateway model name
MODEL_MAP: dict[str, str] = {
    "claude-opus-4-6": "anthropic--claude-4.6-opus",
    "claude-sonnet-4-5-20250929": "anthropic--claude-4.6-sonnet",
    "claude-haiku-4-5-20251001": "anthropic--claude-4.5-haiku",
    "claude-opus-4-20250514": "anthropic--claude-4-opus",
    "claude-sonnet-4-20250514": "anthropic--claude-4-sonnet",
    "claude-3-7-sonnet-20250219": "anthropic--claude-3.7-sonnet",
    "claude-3-5-sonnet-20241022": "anthropic--claude-3.5-sonnet",
    "claude-3-haiku-20240307": "anthropic--claude-3-haiku",
}

REVERSE_MODEL_MAP: dict[str, str] = {v: k for k, v in MODEL_MAP.items()}


class GatewayConfig(BaseModel):
    """Connection details for the enterprise inference gateway."""

    auth_url: str
    client_id: str
    client_secret: str
    base_url: str
    resource_group: str = "default"

    @property
    def token_url(self) -> str:
        return f"{self.auth_url.rstrip('/')}/oauth/token"

    @property
    def api_url(self) -> str:
        return self.base_url.rstrip("/")
