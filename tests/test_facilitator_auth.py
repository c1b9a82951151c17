import unittest

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jose import jwt

from settlekit.facilitator.auth import (
    CdpJwtAuth,
    MissingCredentialsAuth,
    NoAuth,
    build_auth_strategies,
)
from settlekit.facilitator.base import FacilitatorConfigError

KEY_NAME = "organizations/org-1/apiKeys/key-1"


def _ec_keypair() -> tuple[str, str]:
    key = ec.generate_private_key(ec.SECP256R1())
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


class CdpJwtAuthTest(unittest.TestCase):
    def setUp(self) -> None:
        self.private_pem, self.public_pem = _ec_keypair()

    def _decode(self, token: str) -> dict:
        return jwt.decode(
            token,
            self.public_pem,
            algorithms=["ES256"],
            audience="cdp_service",
            issuer="cdp",
            options={"verify_exp": False, "verify_nbf": False},
        )

    def test_token_claims_and_headers(self) -> None:
        auth = CdpJwtAuth(KEY_NAME, self.private_pem)
        token = auth.build_token("post", "api.cdp.coinbase.com", "/platform/v2/x402/settle", now=1_700_000_000)

        claims = self._decode(token)
        self.assertEqual(claims["sub"], KEY_NAME)
        self.assertEqual(claims["iss"], "cdp")
        self.assertEqual(claims["aud"], ["cdp_service"])
        self.assertEqual(claims["uris"], ["POST api.cdp.coinbase.com/platform/v2/x402/settle"])
        self.assertEqual(claims["nbf"], 1_700_000_000)
        self.assertEqual(claims["exp"], 1_700_000_120)

        header = jwt.get_unverified_header(token)
        self.assertEqual(header["alg"], "ES256")
        self.assertEqual(header["kid"], KEY_NAME)
        self.assertEqual(len(header["nonce"]), 16)
        self.assertTrue(header["nonce"].isdigit())

    def test_escaped_newlines_in_secret(self) -> None:
        auth = CdpJwtAuth(KEY_NAME, self.private_pem.replace("\n", "\\n"))
        token = auth.build_token("POST", "api.cdp.coinbase.com", "/x", now=1_700_000_000)
        self.assertEqual(self._decode(token)["sub"], KEY_NAME)

    def test_headers_bind_host_and_path(self) -> None:
        auth = CdpJwtAuth(KEY_NAME, self.private_pem)
        headers = auth.headers("POST", "https://api.cdp.coinbase.com/platform/v2/x402/verify")
        self.assertTrue(headers["Authorization"].startswith("Bearer "))
        token = headers["Authorization"][len("Bearer ") :]
        claims = jwt.get_unverified_claims(token)
        self.assertEqual(claims["uris"], ["POST api.cdp.coinbase.com/platform/v2/x402/verify"])

    def test_nonce_changes_per_token(self) -> None:
        auth = CdpJwtAuth(KEY_NAME, self.private_pem)
        nonces = {
            jwt.get_unverified_header(auth.build_token("POST", "h", "/p", now=1))["nonce"] for _ in range(5)
        }
        self.assertGreater(len(nonces), 1)

    def test_missing_credentials(self) -> None:
        with self.assertRaises(FacilitatorConfigError):
            CdpJwtAuth("", self.private_pem)
        with self.assertRaises(FacilitatorConfigError):
            CdpJwtAuth(KEY_NAME, "")

    def test_unusable_key(self) -> None:
        auth = CdpJwtAuth(KEY_NAME, "not-a-pem-key")
        with self.assertRaises(FacilitatorConfigError):
            auth.build_token("POST", "h", "/p")


class BuildAuthStrategiesTest(unittest.TestCase):
    def test_without_credentials(self) -> None:
        strategies = build_auth_strategies()
        self.assertIsInstance(strategies["none"], NoAuth)
        self.assertIsInstance(strategies["cdp_jwt"], MissingCredentialsAuth)
        self.assertEqual(strategies["none"].headers("POST", "https://x402.org/facilitator/verify"), {})
        with self.assertRaises(FacilitatorConfigError):
            strategies["cdp_jwt"].headers("POST", "https://api.cdp.coinbase.com/platform/v2/x402/verify")

    def test_with_credentials(self) -> None:
        private_pem, _ = _ec_keypair()
        strategies = build_auth_strategies(cdp_api_key_id=KEY_NAME, cdp_api_key_secret=private_pem)
        self.assertIsInstance(strategies["cdp_jwt"], CdpJwtAuth)


if __name__ == "__main__":
    unittest.main()
