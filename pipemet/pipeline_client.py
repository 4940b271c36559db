"""Client for the pipeline execution backend.

The backend runs language detection, translation, the LLM and TTS for one
input text and reports per-stage latencies. PipeMet only records those
numbers; the outputs themselves (translated text, LLM answer, base64 audio)
are passed through to the caller untouched.
"""

from typing import Any, Dict, Mapping, Optional

import httpx
import structlog

from .errors import UpstreamUnavailable, ValidationError

logger = structlog.get_logger(__name__)


class PipelineClient:
    """Thin synchronous wrapper over ``POST {base_url}/pipeline``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def run(
        self,
        customer_name: str,
        customer_app: str,
        text: str,
        language: str = "en",
    ) -> Dict[str, Any]:
        """Execute the pipeline for ``text`` and return the backend's JSON response.

        Raises:
            ValidationError: a required field is empty.
            UpstreamUnavailable: the backend could not be reached or answered
                with an error status or a non-JSON body.
        """
        missing = [
            name
            for name, value in (
                ("customerName", customer_name),
                ("customerAppName", customer_app),
                ("input.text", text),
            )
            if not value
        ]
        if missing:
            raise ValidationError(
                f"{', '.join(missing)} required",
                details={"missing": missing},
            )

        payload = {
            "customerName": customer_name,
            "customerAppName": customer_app,
            "input": {"text": text, "language": language or "en"},
        }
        try:
            response = self._client.post("/pipeline", json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("pipeline.timeout", customer_name=customer_name)
            raise UpstreamUnavailable("pipeline backend timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("pipeline.connection_error", error=str(exc))
            raise UpstreamUnavailable(
                "pipeline backend unreachable",
                details={"error": str(exc)},
            ) from exc

        if not response.is_success:
            logger.warning("pipeline.error_status", status_code=response.status_code)
            raise UpstreamUnavailable(
                f"pipeline backend error: {response.status_code}",
                details={"status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamUnavailable("pipeline backend returned invalid JSON") from exc

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "PipelineClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def to_event_payload(
    response: Mapping[str, Any],
    customer_name: str,
    customer_app: str,
) -> Dict[str, Any]:
    """Reshape a pipeline response into an ingestion payload."""
    payload: Dict[str, Any] = {
        "requestId": response.get("requestId"),
        "customerName": customer_name,
        "customerApp": customer_app,
        "timestamp": response.get("timestamp"),
        "latency": dict(response.get("latency") or {}),
    }
    if isinstance(response.get("usage"), Mapping):
        payload["usage"] = dict(response["usage"])
    return payload
