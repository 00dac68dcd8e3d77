"""
外部补全服务客户端（httpx）。

把上游的各种失败统一映射为 UpstreamServiceError 子类，供熔断器和重试处理器分类：
- 超时 -> UpstreamTimeoutError
- 429 -> UpstreamRateLimitedError（解析 Retry-After）
- 5xx / 传输错误 -> UpstreamUnavailableError
- 其他 4xx（408 除外）-> 不可重试的 UpstreamServiceError
"""

from __future__ import annotations

import json
from typing import Any, Protocol

import httpx

from reply_pipeline.errors import (
    UpstreamRateLimitedError,
    UpstreamServiceError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from reply_pipeline.logging_config import logger
from reply_pipeline.settings import settings


class CompletionService(Protocol):
    async def generate(self, payload: Any) -> Any: ...


def _extract_message_from_json(obj: Any) -> str | None:
    if isinstance(obj, dict):
        # {"error": {"message": "..."}}
        if isinstance(obj.get("error"), dict):
            msg = obj["error"].get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        if isinstance(obj.get("error"), str) and obj["error"].strip():
            return obj["error"].strip()
        msg = obj.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
        detail = obj.get("detail")
        if isinstance(detail, str) and detail.strip():
            return detail.strip()
    return None


def extract_error_message(error_text: str | None) -> str:
    if not error_text:
        return ""
    text = str(error_text)
    try:
        parsed = json.loads(text)
    except ValueError:
        return text
    return _extract_message_from_json(parsed) or text


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is rare for model APIs; treat as unknown.
        return None


def classify_response_error(response: httpx.Response) -> UpstreamServiceError:
    status_code = response.status_code
    message = extract_error_message(response.text) or f"HTTP {status_code}"
    if status_code == 429:
        return UpstreamRateLimitedError(
            f"completion service rate limited: {message}",
            status_code=status_code,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status_code == 408:
        return UpstreamTimeoutError(
            f"completion service timed out: {message}", status_code=status_code
        )
    if status_code >= 500:
        return UpstreamUnavailableError(
            f"completion service error {status_code}: {message}", status_code=status_code
        )
    return UpstreamServiceError(
        f"completion service rejected request ({status_code}): {message}",
        status_code=status_code,
        retryable=False,
    )


class CompletionClient:
    def __init__(
        self,
        *,
        url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url or settings.completion_url
        self.api_key = api_key if api_key is not None else settings.completion_api_key
        self.timeout = float(timeout if timeout is not None else settings.completion_timeout_seconds)
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, trust_env=True)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def generate(self, payload: Any) -> Any:
        try:
            response = await self.client.post(
                self.url, json=payload, headers=self._headers(), timeout=self.timeout
            )
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(
                f"completion service did not answer within {self.timeout:.1f}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailableError(f"completion service unreachable: {exc}") from exc

        if response.status_code >= 400:
            error = classify_response_error(response)
            logger.warning(
                "completion call failed: status=%s retryable=%s message=%s",
                response.status_code,
                error.retryable,
                error,
            )
            raise error

        try:
            return response.json()
        except ValueError:
            return response.text

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


__all__ = [
    "CompletionClient",
    "CompletionService",
    "classify_response_error",
    "extract_error_message",
    "parse_retry_after",
]
