import logging
import os
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel

from codeloop.gateway.config import GatewayConfig


def load_environment() -> None:
    """Load .env files next to the backend and the package without overriding the process env."""
    here = os.path.dirname(os.path.abspath(__file__))
    backend = os.path.dirname(here)
    for candidate in (os.path.join(backend, ".env"), os.path.join(here, ".env")):
        if os.path.exists(candidate):
            load_dotenv(candidate, override=False)


class Settings(BaseModel):
    max_turns_exec: int = 200
    max_turns: int = 25
    fix_turns: int = 5
    keep_recent: int = 6
    build_command: str = "npm run build"
    exec_timeout: float = 600.0
    kill_grace_seconds: float = 3.0
    max_tokens: int = 8192
    default_model: str = "claude-sonnet-4-5-20250929"
    projects_dir: str = os.path.join(os.path.expanduser("~"), ".codeloop", "projects")
    anthropic_api_key: str | None = None
    openai_api_key: str | None = None
    gateway: GatewayConfig | None = None
    log_level: str = "INFO"
    exec_backend: Literal["local", "vercel"] = "local"

    @classmethod
    def from_env(cls) -> "Settings":
        gateway = None
        if os.getenv("GATEWAY_CLIENT_ID") and os.getenv("GATEWAY_BASE_URL"):
            gateway = GatewayConfig(
                auth_url=os.getenv("GATEWAY_AUTH_URL", ""),
                client_id=os.getenv("GATEWAY_CLIENT_ID", ""),
                client_secret=os.getenv("GATEWAY_CLIENT_SECRET", ""),
                base_url=os.getenv("GATEWAY_BASE_URL", ""),
                resource_group=os.getenv("GATEWAY_RESOURCE_GROUP", "default"),
            )
        defaults = cls()
        return cls(
            max_turns_exec=int(os.getenv("CODELOOP_MAX_TURNS_EXEC", defaults.max_turns_exec)),
            max_turns=int(os.getenv("CODELOOP_MAX_TURNS", defaults.max_turns)),
            fix_turns=int(os.getenv("CODELOOP_FIX_TURNS", defaults.fix_turns)),
            keep_recent=int(os.getenv("CODELOOP_KEEP_RECENT", defaults.keep_recent)),
            build_command=os.getenv("CODELOOP_BUILD_COMMAND", defaults.build_command),
            exec_timeout=float(os.getenv("CODELOOP_EXEC_TIMEOUT", defaults.exec_timeout)),
            kill_grace_seconds=float(
                os.getenv("CODELOOP_KILL_GRACE_SECONDS", defaults.kill_grace_seconds)
            ),
            max_tokens=int(os.getenv("CODELOOP_MAX_TOKENS", defaults.max_tokens)),
            default_model=os.getenv("CODELOOP_DEFAULT_MODEL", defaults.default_model),
            projects_dir=os.getenv("CODELOOP_PROJECTS_DIR", defaults.projects_dir),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            gateway=gateway,
            log_level=os.getenv("LOG_LEVEL", defaults.log_level),
            exec_backend=os.getenv("CODELOOP_EXEC_BACKEND", defaults.exec_backend),
        )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("codeloop").setLevel(settings.log_level.upper())
