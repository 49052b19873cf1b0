"""
Outbound webhook client used by CALL_WEBHOOK actions.
"""

from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from shared.circuit_breaker import CircuitBreakerManager, CircuitBreakerOpenException
from shared.errors import ExternalServiceError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception


class WebhookServerError(Exception):
    """Retryable 5xx response from a webhook target."""

    def __init__(self, status_code: int, url: str):
        super().__init__(f"Webhook returned {status_code}")
        self.status_code = status_code
        self.url = url


class WebhookClient:
    """Sends JSON webhooks with per-host circuit breaking and retries."""

    def __init__(self,
                 timeout: float = 10.0,
                 max_attempts: int = 3,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 base_delay: float = 0.5):
        self.timeout = timeout
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.logger = get_logger("business_rules.webhooks.client")
        self.circuit_breakers = CircuitBreakerManager()

        self.retry_config = RetryConfig(
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=5.0,
            exponential_base=2.0,
            jitter=True
        )
        self._send_with_retry = retry_on_exception(
            (httpx.TransportError, WebhookServerError),
            config=self.retry_config
        )(self._send_once)

    @classmethod
    def from_config(cls, config) -> "WebhookClient":
        return cls(
            timeout=config.webhook_timeout_seconds,
            max_attempts=config.webhook_max_attempts,
            failure_threshold=config.webhook_failure_threshold,
            recovery_timeout=config.webhook_recovery_timeout
        )

    async def send(self,
                   url: str,
                   method: str = "POST",
                   headers: Optional[Dict[str, str]] = None,
                   payload: Any = None) -> Dict[str, Any]:
        """Send one webhook; returns ``{status_code, url, method}``."""
        method = method.upper()
        breaker = self.circuit_breakers.get_circuit_breaker(
            f"webhook:{urlparse(url).netloc}",
            failure_threshold=self.failure_threshold,
            recovery_timeout=self.recovery_timeout
        )

        try:
            response = await breaker.call(self._send_with_retry, url, method, headers, payload)
        except ExternalServiceError:
            raise
        except CircuitBreakerOpenException as exc:
            self.logger.warning("Webhook circuit open", url=url)
            raise ExternalServiceError("webhook", str(exc), {"url": url})
        except RetryError as exc:
            self.logger.error(
                "Webhook failed",
                url=url,
                method=method,
                attempts=exc.attempts,
                error=str(exc.last_exception)
            )
            raise ExternalServiceError(
                "webhook",
                f"Request to {url} failed after {exc.attempts} attempts",
                {"url": url, "error": str(exc.last_exception)}
            )

        self.logger.info("Webhook delivered", url=url, method=method, status_code=response.status_code)
        return {"status_code": response.status_code, "url": url, "method": method}

    async def _send_once(self,
                         url: str,
                         method: str,
                         headers: Optional[Dict[str, str]],
                         payload: Any) -> httpx.Response:
        request_kwargs: Dict[str, Any] = {"headers": headers or {}}
        if method != "GET" and payload is not None:
            request_kwargs["json"] = payload

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.request(method, url, **request_kwargs)

        if response.status_code >= 500:
            raise WebhookServerError(response.status_code, url)
        if response.status_code >= 400:
            raise ExternalServiceError(
                "webhook",
                f"{method} {url} returned {response.status_code}",
                {"url": url, "status_code": response.status_code}
            )
        return response

    def get_stats(self) -> Dict[str, Any]:
        return {"circuit_breakers": self.circuit_breakers.get_all_states()}
