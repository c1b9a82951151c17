"""
Per-network facilitator resolution.

Resolution order:
  1. A process-wide override base URL (FACILITATOR_URL) wins.
  2. Else a known registry key (FACILITATOR_KEY).
  3. Else the registry entry advertising the requested network.
  4. Else the default entry (x402.org testnet).

resolve_config never raises: the default entry is always usable.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, Literal
from urllib.parse import urlparse

PathKey = Literal["supported", "verify", "settle"]
AuthMode = Literal["none", "cdp_jwt"]

DEFAULT_PATHS: Dict[str, str] = {
    "supported": "/supported",
    "verify": "/verify",
    "settle": "/settle",
}
DEFAULT_FACILITATOR_KEY = "x402.org"
CDP_HOSTS = {"api.cdp.coinbase.com", "api.coinbase.com"}


@dataclass(frozen=True)
class FacilitatorConfig:
    key: str
    name: str
    base_url: str
    network: str | None
    auth_mode: AuthMode = "none"
    paths: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PATHS))
    timeout_seconds: int = 10

    def url_for(self, path_key: PathKey) -> str:
        return url_for(self, path_key)


KNOWN_FACILITATORS: Dict[str, FacilitatorConfig] = {
    "coinbase-cdp": FacilitatorConfig(
        key="coinbase-cdp",
        name="Coinbase CDP (Mainnet)",
        base_url="https://api.cdp.coinbase.com/platform/v2/x402",
        network="base",
        auth_mode="cdp_jwt",
        timeout_seconds=15,
    ),
    "x402.org": FacilitatorConfig(
        key="x402.org",
        name="x402.org (Testnet)",
        base_url="https://x402.org/facilitator",
        network="base-sepolia",
        timeout_seconds=10,
    ),
    "open.x402.host/xlayer": FacilitatorConfig(
        key="open.x402.host/xlayer",
        name="open.x402.host/xlayer",
        base_url="https://open.x402.host/xlayer",
        network="okx-x-layer",
        timeout_seconds=10,
    ),
}


def _auth_mode_for_url(base_url: str) -> AuthMode:
    host = (urlparse(base_url).hostname or "").lower()
    return "cdp_jwt" if host in CDP_HOSTS else "none"


def url_for(config: FacilitatorConfig, path_key: PathKey) -> str:
    path = config.paths.get(path_key) or DEFAULT_PATHS[path_key]
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{config.base_url.rstrip('/')}{path}"


def resolve_config(
    network: str | None,
    *,
    override_base_url: str | None = None,
    registry_key: str | None = None,
    registry: Dict[str, FacilitatorConfig] | None = None,
) -> FacilitatorConfig:
    known = KNOWN_FACILITATORS if registry is None else registry

    base_url = (override_base_url or "").strip()
    if base_url:
        return FacilitatorConfig(
            key="custom",
            name="Custom Facilitator",
            base_url=base_url,
            network=network or "base",
            auth_mode=_auth_mode_for_url(base_url),
            timeout_seconds=15,
        )

    if registry_key and registry_key in known:
        return known[registry_key]

    if network:
        for config in known.values():
            if config.network == network:
                return config

    default = known.get(DEFAULT_FACILITATOR_KEY) or KNOWN_FACILITATORS[DEFAULT_FACILITATOR_KEY]
    return default


class FacilitatorResolver:
    """Binds the process-wide override and registry key so callers only pass a network."""

    def __init__(
        self,
        *,
        override_base_url: str | None = None,
        registry_key: str | None = None,
        default_network: str | None = None,
        registry: Dict[str, FacilitatorConfig] | None = None,
    ) -> None:
        self.override_base_url = override_base_url
        self.registry_key = registry_key
        self.default_network = default_network
        self.registry = registry

    def resolve(self, network: str | None) -> FacilitatorConfig:
        config = resolve_config(
            network or self.default_network,
            override_base_url=self.override_base_url,
            registry_key=self.registry_key,
            registry=self.registry,
        )
        if config.network is None and network:
            config = replace(config, network=network)
        return config
