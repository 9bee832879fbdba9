"""HTTP calls made by webhook steps."""

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from convoflow.config import settings
from convoflow.errors import FatalNodeError, TransientExternalError
from convoflow.executor.retry import call_with_retry

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS = frozenset({408, 425, 429})


@dataclass
class WebhookResponse:
    status: int
    body: Any
    attempts: int = 1

    def as_variable(self) -> Dict[str, Any]:
        return {"status": self.status, "body": self.body}


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text


class WebhookClient:
    """
    Sends one webhook request with a bounded timeout and retries transient
    failures (network errors, timeouts, 5xx, 408/425/429) with exponential
    backoff. Other 4xx responses fail immediately.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client or httpx.Client(follow_redirects=True)
        self.sleep = sleep

    def close(self) -> None:
        self.client.close()

    def _send_once(self, method: str, url: str, headers: Dict[str, str], body: Any, timeout: float) -> WebhookResponse:
        kwargs: Dict[str, Any] = {"headers": headers, "timeout": timeout}
        if body is not None and method != "GET":
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientExternalError(f"webhook {method} {url} timed out after {timeout}s") from exc
        except httpx.RequestError as exc:
            raise TransientExternalError(f"webhook {method} {url} failed: {exc}") from exc

        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS:
            raise TransientExternalError(f"webhook {method} {url} returned {response.status_code}")
        if response.status_code >= 400:
            raise FatalNodeError(f"webhook {method} {url} returned {response.status_code}")
        return WebhookResponse(status=response.status_code, body=_decode_body(response))

    def send(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        node_id: Optional[str] = None,
    ) -> WebhookResponse:
        timeout = timeout or settings.webhook_timeout_seconds
        max_attempts = max_attempts or settings.webhook_max_attempts
        backoff = settings.webhook_backoff_seconds if backoff_seconds is None else backoff_seconds

        result, attempts = call_with_retry(
            lambda: self._send_once(method, url, headers or {}, body, timeout),
            max_attempts=max_attempts,
            backoff_seconds=backoff,
            node_id=node_id,
            sleep=self.sleep,
        )
        result.attempts = attempts
        logger.info("webhook_called", node_id=node_id, method=method, url=url, status=result.status, attempts=attempts)
        return result
