"""
Push Gateway — the contract every push transport implements.

A gateway offers two operations:

- `send_one(token, envelope, data)` returns the provider message id,
  raises TokenRejectedError when the provider refuses that token, and
  GatewayError when the transport itself fails.
- `send_batch(tokens, envelope, data)` returns one result per input
  token, in input order. Only transport failures raise.

`data` is already a flat str -> str map when it reaches a gateway.

HttpPushGateway implements both on top of a single per-token HTTP call,
fanning a batch out over one shared HTTP/2 connection with bounded
concurrency.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from app.core.exceptions import GatewayError, TokenRejectedError
from app.models.notifications import ErrorClass, PushEnvelope

logger = logging.getLogger(__name__)


class GatewayTokenResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_class: ErrorClass = ErrorClass.NONE


class GatewayBatchResult(BaseModel):
    success_count: int = 0
    failure_count: int = 0
    per_token_results: list[GatewayTokenResult] = Field(default_factory=list)


class PushGateway(ABC):
    name: str = "base"

    @abstractmethod
    async def send_one(
        self, token: str, envelope: PushEnvelope, data: dict[str, str],
    ) -> str:
        raise NotImplementedError

    @abstractmethod
    async def send_batch(
        self, tokens: list[str], envelope: PushEnvelope, data: dict[str, str],
    ) -> GatewayBatchResult:
        raise NotImplementedError


class HttpPushGateway(PushGateway):
    """Base for HTTP/2 providers that only expose a per-token send."""

    def __init__(self, *, max_concurrency: int = 10, request_timeout: float = 10.0):
        self.max_concurrency = max(1, max_concurrency)
        self.request_timeout = request_timeout

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(http2=True, timeout=self.request_timeout)

    @abstractmethod
    async def _deliver(
        self,
        client: httpx.AsyncClient,
        token: str,
        envelope: PushEnvelope,
        data: dict[str, str],
    ) -> GatewayTokenResult:
        """
        Send to one token. Returns the per-token result; raises
        GatewayError for authentication or provider-wide failures.
        """

    async def _deliver_guarded(
        self,
        client: httpx.AsyncClient,
        token: str,
        envelope: PushEnvelope,
        data: dict[str, str],
    ) -> GatewayTokenResult:
        try:
            return await self._deliver(client, token, envelope, data)
        except httpx.TimeoutException as exc:
            raise GatewayError(f"{self.name} request timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise GatewayError(f"{self.name} unreachable: {exc}") from exc
        except (ValueError, KeyError) as exc:
            raise GatewayError(f"{self.name} returned an unreadable response: {exc}") from exc

    async def send_one(
        self, token: str, envelope: PushEnvelope, data: dict[str, str],
    ) -> str:
        async with self._http_client() as client:
            result = await self._deliver_guarded(client, token, envelope, data)

        if not result.success:
            raise TokenRejectedError(
                f"{self.name} rejected token {token[:16]}...: {result.error_code}",
                error_code=result.error_code,
                error_class=result.error_class,
            )
        return result.message_id or ""

    async def send_batch(
        self, tokens: list[str], envelope: PushEnvelope, data: dict[str, str],
    ) -> GatewayBatchResult:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async with self._http_client() as client:
            async def _bounded(token: str) -> GatewayTokenResult:
                async with semaphore:
                    return await self._deliver_guarded(client, token, envelope, data)

            results = await asyncio.gather(
                *(_bounded(token) for token in tokens),
                return_exceptions=True,
            )

        for result in results:
            if isinstance(result, BaseException):
                raise result

        success_count = sum(1 for r in results if r.success)
        logger.info(
            "%s batch sent: %d/%d accepted", self.name, success_count, len(tokens),
        )
        return GatewayBatchResult(
            success_count=success_count,
            failure_count=len(tokens) - success_count,
            per_token_results=list(results),
        )
