from codeloop.gateway.auth import (
    CsrfManager,
    DeploymentResolver,
    GatewayCaches,
    TokenManager,
    list_available_models,
)
from codeloop.gateway.config import MODEL_MAP, GatewayConfig
from codeloop.gateway.transport import GatewayTransport, gateway_http_client


__all__ = [
    "MODEL_MAP",
    "CsrfManager",
    "DeploymentResolver",
    "GatewayCaches",
    "GatewayConfig",
    "GatewayTransport",
    "TokenManager",
    "gateway_http_client",
    "list_available_models",
]
