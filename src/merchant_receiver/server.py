import json
import threading
import time
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from typing import Self

from src.utils.crypto import SignatureCheck, verify_request


class _WebhookHandler(BaseHTTPRequestHandler):
    """HTTP request handler standing in for a partner's callback endpoint."""

    def do_POST(self):
        content_length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(content_length)

        server_config = self.server.config  # type: ignore[attr-defined]

        with server_config["lock"]:
            server_config["request_count"] += 1
            code = server_config["response_code"]
            if server_config["response_sequence"]:
                code = server_config["response_sequence"].pop(0)

        # Simulate slow response
        if server_config["response_delay"] > 0:
            time.sleep(server_config["response_delay"])

        # Parse payload
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, ValueError):
            self._reply(400, {"error": "invalid JSON"})
            return

        # Validate required fields
        required_fields = ["event_type", "status", "timestamp"]
        missing = [f for f in required_fields if f not in payload]
        if "vai_number" not in payload and "user_id" not in payload:
            missing.append("vai_number|user_id")
        if missing:
            self._reply(400, {"error": f"missing fields: {missing}"})
            return

        # Signature verification
        if server_config["signature_secret"]:
            check = verify_request(
                server_config["signature_secret"],
                dict(self.headers),
                body,
                server_config["tolerance_seconds"],
            )
            if check is not SignatureCheck.VALID:
                with server_config["lock"]:
                    server_config["rejected_signatures"].append(check)
                self._reply(401, {"error": f"signature {check.value}"})
                return

        # Idempotency check
        event_id = self.headers.get("X-Event-ID", "") or str(payload.get("event_id", ""))
        if server_config["idempotency_enabled"] and event_id:
            with server_config["lock"]:
                if event_id in server_config["processed_event_ids"]:
                    # Return success but don't process again
                    self._reply(200, {"status": "already_processed"})
                    return

        # Record the event
        with server_config["lock"]:
            server_config["received_events"].append({
                "event_id": event_id,
                "payload": payload,
                "headers": dict(self.headers),
                "status_code": code,
            })
            if event_id and 200 <= code < 300:
                server_config["processed_event_ids"].add(event_id)

        self._reply(code, {"status": "ok"} if 200 <= code < 300 else {"error": "simulated"})

    def _reply(self, code: int, body: dict) -> None:
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        if code != 204:
            self.wfile.write(json.dumps(body).encode())

    def log_message(self, format, *args):
        """Suppress default request logging."""
        pass


class MerchantWebhookServer:
    """Configurable HTTP server that simulates a partner webhook receiver."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        secret: str | None = None,
        tolerance_seconds: int = 300,
    ):
        self._host = host
        self._port = port
        self._config = {
            "response_code": 200,
            "response_sequence": [],
            "response_delay": 0,
            "signature_secret": secret,
            "tolerance_seconds": tolerance_seconds,
            "idempotency_enabled": False,
            "received_events": [],
            "processed_event_ids": set(),
            "rejected_signatures": [],
            "request_count": 0,
            "lock": threading.Lock(),
        }
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def set_response_code(self, code: int) -> Self:
        self._config["response_code"] = code
        return self

    def set_response_sequence(self, codes: list[int]) -> Self:
        """Answer the next requests with ``codes`` in order, then fall back
        to the fixed response code."""
        with self._config["lock"]:
            self._config["response_sequence"] = list(codes)
        return self

    def set_response_delay(self, seconds: float) -> Self:
        self._config["response_delay"] = seconds
        return self

    def enable_signature_verification(self, secret: str) -> Self:
        self._config["signature_secret"] = secret
        return self

    def enable_idempotency(self) -> Self:
        self._config["idempotency_enabled"] = True
        return self

    def start(self) -> None:
        self._server = ThreadingHTTPServer((self._host, self._port), _WebhookHandler)
        self._server.config = self._config  # type: ignore[attr-defined]
        # Get the actual port (useful when port=0)
        self._port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}/webhook"

    @property
    def port(self) -> int:
        return self._port

    def get_received_events(self) -> list[dict]:
        with self._config["lock"]:
            return list(self._config["received_events"])

    def get_processed_count(self) -> int:
        with self._config["lock"]:
            return len(self._config["received_events"])

    def get_request_count(self) -> int:
        with self._config["lock"]:
            return self._config["request_count"]

    def get_rejected_signatures(self) -> list[SignatureCheck]:
        with self._config["lock"]:
            return list(self._config["rejected_signatures"])

    def was_event_processed(self, event_id: str) -> bool:
        with self._config["lock"]:
            return event_id in self._config["processed_event_ids"]

    def clear_events(self) -> None:
        with self._config["lock"]:
            self._config["received_events"].clear()
            self._config["processed_event_ids"].clear()
            self._config["rejected_signatures"].clear()
            self._config["request_count"] = 0
