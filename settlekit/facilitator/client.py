import asyncio
from typing import Any, Awaitable, Callable, Dict

import httpx

from settlekit.config import Settings
from settlekit.facilitator.auth import AuthStrategy, NoAuth, build_auth_strategies
from settlekit.facilitator.base import (
    FacilitatorError,
    FacilitatorRequest,
    SettleResult,
    VerifyResult,
    parse_settle_response,
    parse_verify_response,
)
from settlekit.facilitator.config import FacilitatorConfig, FacilitatorResolver, PathKey
from settlekit.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_VERIFY_TIMEOUT_SECONDS = 30.0
DEFAULT_SETTLE_TIMEOUT_SECONDS = 20.0
DEFAULT_RETRIES = 2
DEFAULT_BACKOFF_SECONDS = 0.2


class HTTPFacilitatorClient:
    def __init__(
        self,
        resolver: FacilitatorResolver,
        *,
        auth_strategies: Dict[str, AuthStrategy] | None = None,
        client: httpx.AsyncClient | None = None,
        verify_timeout_seconds: float | None = DEFAULT_VERIFY_TIMEOUT_SECONDS,
        settle_timeout_seconds: float | None = DEFAULT_SETTLE_TIMEOUT_SECONDS,
        verify_retries: int = DEFAULT_RETRIES,
        settle_retries: int = DEFAULT_RETRIES,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.resolver = resolver
        self.auth_strategies = auth_strategies or {"none": NoAuth()}
        self._owns_client = client is None
        # Deadlines are enforced with asyncio.wait_for, not by the transport.
        self._client = client or httpx.AsyncClient(timeout=None)
        self.verify_timeout_seconds = verify_timeout_seconds
        self.settle_timeout_seconds = settle_timeout_seconds
        self.verify_retries = verify_retries
        self.settle_retries = settle_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def verify(self, request: FacilitatorRequest) -> VerifyResult:
        config = self.resolver.resolve(request.network)
        data = await self._request_json(
            config,
            "verify",
            request.to_dict(),
            timeout=self.verify_timeout_seconds or config.timeout_seconds,
            retries=self.verify_retries,
        )
        return parse_verify_response(data)

    async def settle(self, request: FacilitatorRequest, *, idempotency_key: str | None = None) -> SettleResult:
        config = self.resolver.resolve(request.network)
        extra_headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        data = await self._request_json(
            config,
            "settle",
            request.to_dict(),
            timeout=self.settle_timeout_seconds or config.timeout_seconds,
            retries=self.settle_retries,
            extra_headers=extra_headers,
        )
        result = parse_settle_response(data, request)
        if not result.success:
            logger.warning(
                "facilitator_settle_rejected",
                facilitator=config.key,
                network=result.network,
                reason=getattr(result, "reason", None),
            )
        return result

    async def supported(self, network: str | None = None) -> Dict[str, Any]:
        """GET the facilitator's supported payment kinds, e.g. {"kinds": [{"scheme", "network"}]}."""
        config = self.resolver.resolve(network)
        return await self._request_json(
            config,
            "supported",
            None,
            method="GET",
            timeout=config.timeout_seconds,
            retries=self.verify_retries,
        )

    def _auth_for(self, config: FacilitatorConfig) -> AuthStrategy:
        strategy = self.auth_strategies.get(config.auth_mode)
        if strategy is None:
            return self.auth_strategies.get("none") or NoAuth()
        return strategy

    async def _request_json(
        self,
        config: FacilitatorConfig,
        path_key: PathKey,
        body: Dict[str, Any] | None,
        *,
        method: str = "POST",
        timeout: float,
        retries: int,
        extra_headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        url = config.url_for(path_key)
        auth = self._auth_for(config)
        last_error: Exception | None = None
        last_status: int | None = None

        for attempt in range(retries + 1):
            # Token minted per attempt; a config error here is never retried.
            headers = {**(extra_headers or {}), **auth.headers(method, url)}
            if body is not None:
                headers["Content-Type"] = "application/json"
            try:
                resp = await asyncio.wait_for(
                    self._client.request(method, url, json=body, headers=headers),
                    timeout=timeout,
                )
                if not resp.is_success:
                    last_status = resp.status_code
                    raise FacilitatorError(
                        f"Facilitator returned {resp.status_code}: {resp.text[:500]}",
                        status_code=resp.status_code,
                    )
                try:
                    data = resp.json()
                except ValueError as exc:
                    raise FacilitatorError("Facilitator returned a non-JSON body", status_code=resp.status_code) from exc
                if not isinstance(data, dict):
                    raise FacilitatorError("Facilitator returned a non-object JSON body", status_code=resp.status_code)
                return data
            except asyncio.TimeoutError as exc:
                last_error = FacilitatorError(f"Facilitator {path_key} timed out after {timeout}s")
                last_error.__cause__ = exc
            except (FacilitatorError, httpx.HTTPError) as exc:
                last_error = exc

            logger.warning(
                "facilitator_request_failed",
                facilitator=config.key,
                path=path_key,
                attempt=attempt + 1,
                max_attempts=retries + 1,
                error=str(last_error),
            )
            if attempt < retries:
                await self._sleep(self.backoff_seconds * (attempt + 1))

        raise FacilitatorError(
            f"facilitator {path_key} failed after {retries + 1} attempts: {last_error}",
            status_code=last_status,
        ) from last_error

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HTTPFacilitatorClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def build_facilitator_client(settings: Settings, *, client: httpx.AsyncClient | None = None) -> HTTPFacilitatorClient:
    resolver = FacilitatorResolver(
        override_base_url=settings.facilitator_url,
        registry_key=settings.facilitator_key,
        default_network=settings.network,
    )
    strategies = build_auth_strategies(
        cdp_api_key_id=settings.cdp_api_key_id,
        cdp_api_key_secret=settings.cdp_api_key_secret,
    )
    return HTTPFacilitatorClient(
        resolver,
        auth_strategies=strategies,
        client=client,
        verify_timeout_seconds=settings.verify_timeout_seconds,
        settle_timeout_seconds=settings.settle_timeout_seconds,
        verify_retries=settings.verify_retries,
        settle_retries=settings.settle_retries,
    )
