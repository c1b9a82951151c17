import unittest

from settlekit.facilitator.config import (
    DEFAULT_FACILITATOR_KEY,
    KNOWN_FACILITATORS,
    FacilitatorConfig,
    FacilitatorResolver,
    resolve_config,
    url_for,
)


class ResolveConfigTest(unittest.TestCase):
    def test_override_url_wins(self) -> None:
        config = resolve_config(
            "base-sepolia",
            override_base_url="https://facilitator.example.com/",
            registry_key="coinbase-cdp",
        )
        self.assertEqual(config.key, "custom")
        self.assertEqual(config.network, "base-sepolia")
        self.assertEqual(config.auth_mode, "none")
        self.assertEqual(config.timeout_seconds, 15)
        self.assertEqual(config.url_for("verify"), "https://facilitator.example.com/verify")

    def test_override_without_network_defaults_to_base(self) -> None:
        config = resolve_config(None, override_base_url="https://facilitator.example.com")
        self.assertEqual(config.network, "base")

    def test_override_on_cdp_host_uses_jwt_auth(self) -> None:
        config = resolve_config("base", override_base_url="https://api.cdp.coinbase.com/platform/v2/x402")
        self.assertEqual(config.auth_mode, "cdp_jwt")

    def test_registry_key_beats_network(self) -> None:
        config = resolve_config("okx-x-layer", registry_key="coinbase-cdp")
        self.assertEqual(config.key, "coinbase-cdp")
        self.assertEqual(config.auth_mode, "cdp_jwt")

    def test_unknown_registry_key_falls_through(self) -> None:
        config = resolve_config("okx-x-layer", registry_key="nope")
        self.assertEqual(config.key, "open.x402.host/xlayer")

    def test_network_match(self) -> None:
        self.assertEqual(resolve_config("base").key, "coinbase-cdp")
        self.assertEqual(resolve_config("base-sepolia").key, "x402.org")

    def test_unknown_network_gets_default(self) -> None:
        self.assertEqual(resolve_config("solana-devnet").key, DEFAULT_FACILITATOR_KEY)
        self.assertEqual(resolve_config(None).key, DEFAULT_FACILITATOR_KEY)
        self.assertEqual(resolve_config("").key, DEFAULT_FACILITATOR_KEY)

    def test_custom_registry(self) -> None:
        registry = {
            "local": FacilitatorConfig(key="local", name="Local", base_url="http://localhost:4020", network="anvil"),
        }
        config = resolve_config("anvil", registry=registry)
        self.assertEqual(config.key, "local")
        # Missing default in a custom registry still yields a usable entry.
        self.assertEqual(resolve_config("other", registry=registry).key, DEFAULT_FACILITATOR_KEY)


class UrlForTest(unittest.TestCase):
    def test_joins_without_double_slash(self) -> None:
        config = FacilitatorConfig(
            key="k",
            name="k",
            base_url="https://fac.example/x402/",
            network=None,
            paths={"verify": "check", "settle": "/pay"},
        )
        self.assertEqual(url_for(config, "verify"), "https://fac.example/x402/check")
        self.assertEqual(url_for(config, "settle"), "https://fac.example/x402/pay")
        self.assertEqual(url_for(config, "supported"), "https://fac.example/x402/supported")

    def test_known_entries(self) -> None:
        cdp = KNOWN_FACILITATORS["coinbase-cdp"]
        self.assertEqual(cdp.url_for("settle"), "https://api.cdp.coinbase.com/platform/v2/x402/settle")


class FacilitatorResolverTest(unittest.TestCase):
    def test_default_network_used_when_request_has_none(self) -> None:
        resolver = FacilitatorResolver(default_network="okx-x-layer")
        self.assertEqual(resolver.resolve(None).key, "open.x402.host/xlayer")
        self.assertEqual(resolver.resolve("base").key, "coinbase-cdp")

    def test_override_keeps_request_network(self) -> None:
        resolver = FacilitatorResolver(override_base_url="https://fac.example", default_network="base")
        self.assertEqual(resolver.resolve("base-sepolia").network, "base-sepolia")
        self.assertEqual(resolver.resolve(None).network, "base")


if __name__ == "__main__":
    unittest.main()
