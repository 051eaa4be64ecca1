import logging
import time

import requests

from src.delivery.signer import WebhookSigner
from src.models.delivery import DeliveryRecord, ErrorKind, Outcome, Response
from src.utils.crypto import canonical_payload

logger = logging.getLogger(__name__)

USER_AGENT = "VAI-Webhook-Delivery/1.0"


def classify_status(status_code: int) -> ErrorKind | None:
    """None for 2xx, otherwise the coarse failure class."""
    if 200 <= status_code < 300:
        return None
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.CLIENT_REJECTED


class DeliveryExecutor:
    """Performs exactly one signed POST and classifies the result.

    Never retries and never raises for delivery problems; everything that
    can go wrong on the wire comes back as a failed Outcome.
    """

    def __init__(
        self,
        timeout_seconds: float = 10,
        response_body_limit: int = 1000,
        session: requests.Session | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.response_body_limit = response_body_limit
        # requests.post opens a fresh connection per call, which is safe
        # across the scheduler worker threads.
        self._http = session if session is not None else requests

    def execute(self, record: DeliveryRecord) -> Outcome:
        headers = {
            "X-Event-ID": record.event_id,
            "X-Delivery-ID": record.id,
            "X-Delivery-Attempt": str(record.attempts + 1),
        }
        return self.send(record.target_url, record.payload, record.secret, headers)

    def send(
        self,
        url: str,
        payload: dict,
        secret: str,
        extra_headers: dict | None = None,
    ) -> Outcome:
        """Sign ``payload`` with the current time and POST it to ``url``."""
        body = canonical_payload(payload)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if payload.get("event_type"):
            headers["X-Event-Type"] = str(payload["event_type"])
        headers.update(WebhookSigner(secret).headers(body))
        if extra_headers:
            headers.update(extra_headers)

        start = time.monotonic()
        deadline = start + self.timeout_seconds
        status_code = None
        response_body = ""
        error = None
        detail = None

        try:
            resp = self._http.post(
                url,
                data=body,
                headers=headers,
                timeout=self.timeout_seconds,
                allow_redirects=False,
                stream=True,
            )
            try:
                response_body = self._read_body(resp, deadline)
            finally:
                resp.close()
            status_code = resp.status_code
            error = classify_status(status_code)
            if error is not None:
                detail = f"HTTP {status_code}"
        except requests.exceptions.Timeout as e:
            error = ErrorKind.TIMEOUT
            detail = str(e)
        except requests.exceptions.ConnectionError as e:
            error = ErrorKind.NETWORK_ERROR
            detail = str(e)
        except requests.exceptions.RequestException as e:
            error = ErrorKind.NETWORK_ERROR
            detail = str(e)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if error is None:
            logger.debug("POST %s -> %s in %dms", url, status_code, elapsed_ms)
        else:
            logger.warning("POST %s failed: %s (%s)", url, error.value, detail)

        if status_code is None:
            response_body = (detail or "")[: self.response_body_limit]

        return Outcome(
            success=error is None,
            response=Response(status_code=status_code, body=response_body, time_ms=elapsed_ms),
            error=error,
            detail=detail,
        )

    def _read_body(self, resp, deadline: float) -> str:
        """Read at most ``response_body_limit`` characters before ``deadline``.

        ``timeout=`` only bounds each socket read, so a partner trickling
        bytes is cut off here instead. The overrun is at most one read.
        """
        limit_bytes = self.response_body_limit * 4  # worst case UTF-8
        chunks = []
        received = 0
        try:
            for chunk in resp.iter_content(chunk_size=1024):
                self._check_deadline(deadline)
                chunks.append(chunk)
                received += len(chunk)
                if received >= limit_bytes:
                    break
        except requests.exceptions.ConnectionError as e:
            # requests reports a read timeout while streaming as ConnectionError.
            if time.monotonic() >= deadline:
                raise requests.exceptions.ReadTimeout(str(e)) from e
            raise
        self._check_deadline(deadline)

        raw = b"".join(chunks)
        try:
            text = raw.decode(resp.encoding or "utf-8", errors="replace")
        except LookupError:
            text = raw.decode("utf-8", errors="replace")
        return text[: self.response_body_limit]

    def _check_deadline(self, deadline: float) -> None:
        if time.monotonic() > deadline:
            raise requests.exceptions.ReadTimeout(
                f"response not complete within {self.timeout_seconds}s"
            )
