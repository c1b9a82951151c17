import secrets
import time
from typing import Dict, Protocol
from urllib.parse import urlparse

from jose import jwt
from jose.exceptions import JOSEError

from settlekit.facilitator.base import FacilitatorConfigError

CDP_ISSUER = "cdp"
CDP_AUDIENCE = "cdp_service"
CDP_TOKEN_TTL_SECONDS = 120


class AuthStrategy(Protocol):
    def headers(self, method: str, url: str) -> Dict[str, str]:
        ...


class NoAuth:
    def headers(self, method: str, url: str) -> Dict[str, str]:
        return {}


def _nonce() -> str:
    return "".join(secrets.choice("0123456789") for _ in range(16))


class CdpJwtAuth:
    """Short-lived bearer token bound to one METHOD host/path, signed ES256."""

    def __init__(self, key_name: str, key_secret: str, *, ttl_seconds: int = CDP_TOKEN_TTL_SECONDS) -> None:
        if not key_name or not key_secret:
            raise FacilitatorConfigError("CDP_API_KEY_ID and CDP_API_KEY_SECRET are required for cdp_jwt auth")
        self.key_name = key_name
        # Keys pasted into .env files usually carry literal "\n" sequences.
        self._key_secret = key_secret.replace("\\n", "\n")
        self.ttl_seconds = ttl_seconds

    def build_token(self, method: str, host: str, path: str, *, now: int | None = None) -> str:
        issued_at = int(time.time()) if now is None else int(now)
        claims = {
            "sub": self.key_name,
            "iss": CDP_ISSUER,
            "aud": [CDP_AUDIENCE],
            "uris": [f"{method.upper()} {host}{path}"],
            "nbf": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        try:
            return jwt.encode(
                claims,
                self._key_secret,
                algorithm="ES256",
                headers={"kid": self.key_name, "nonce": _nonce()},
            )
        except JOSEError as exc:
            raise FacilitatorConfigError(f"failed to sign CDP token: {exc}") from exc

    def headers(self, method: str, url: str) -> Dict[str, str]:
        parsed = urlparse(url)
        token = self.build_token(method, parsed.netloc, parsed.path or "/")
        return {"Authorization": f"Bearer {token}"}


class MissingCredentialsAuth:
    """Stands in for a vendor strategy whose credentials were not configured."""

    def __init__(self, auth_mode: str) -> None:
        self.auth_mode = auth_mode

    def headers(self, method: str, url: str) -> Dict[str, str]:
        raise FacilitatorConfigError(f"facilitator requires {self.auth_mode} auth but no credentials are configured")


def build_auth_strategies(
    *,
    cdp_api_key_id: str | None = None,
    cdp_api_key_secret: str | None = None,
) -> Dict[str, AuthStrategy]:
    strategies: Dict[str, AuthStrategy] = {"none": NoAuth()}
    if cdp_api_key_id and cdp_api_key_secret:
        strategies["cdp_jwt"] = CdpJwtAuth(cdp_api_key_id, cdp_api_key_secret)
    else:
        strategies["cdp_jwt"] = MissingCredentialsAuth("cdp_jwt")
    return strategies
