"""
HTTP output handlers.

HttpOutput POSTs each batch as a JSON array. LokiOutput converts the batch
into Grafana Loki push streams first.
"""

import json
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp
import structlog

from ..config import HttpOutputSettings
from ..core.exceptions import DeliveryError

logger = structlog.get_logger(__name__)

USER_AGENT = "shiplog/0.1.0"


class HttpOutput:
    """
    Output handler delivering batches over HTTP.

    Any transport error or non-2xx response raises DeliveryError so the
    retry executor can back off.
    """

    def __init__(self, settings: HttpOutputSettings, session: Optional[aiohttp.ClientSession] = None):
        self.settings = settings
        self.session = session
        self._owns_session = session is None

        logger.info("HTTP output initialized", url=settings.url)

    async def start(self) -> None:
        """Open the HTTP session."""
        if self.session is not None:
            return

        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.settings.timeout_seconds)
        )
        self._owns_session = True
        logger.info("HTTP output started")

    async def stop(self) -> None:
        """Close the HTTP session if this output opened it."""
        if self.session and self._owns_session:
            await self.session.close()
        self.session = None

        logger.info("HTTP output stopped")

    async def __call__(self, logs: List[Any]) -> None:
        if not self.session:
            raise DeliveryError("HTTP output not started")

        payload = self.build_payload(logs)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            **self.settings.headers,
        }

        try:
            async with self.session.post(self.settings.url, json=payload, headers=headers) as response:
                if 200 <= response.status < 300:
                    logger.debug("Batch sent", url=self.settings.url, batch_size=len(logs))
                    return

                error_text = await response.text()
                raise DeliveryError(
                    "Output endpoint returned error",
                    details={"status": response.status, "body": error_text[:512]}
                )
        except aiohttp.ClientError as e:
            raise DeliveryError(
                "HTTP transport error",
                details={"url": self.settings.url, "error": str(e)}
            ) from e

    def build_payload(self, logs: List[Any]) -> Any:
        return logs


class LokiOutput(HttpOutput):
    """Output handler pushing batches to Grafana Loki."""

    def build_payload(self, logs: List[Any]) -> Any:
        return {"streams": convert_to_loki_streams(logs)}


def _timestamp_ns(timestamp: Any) -> str:
    if isinstance(timestamp, str):
        try:
            dt = datetime.fromisoformat(timestamp.replace('Z', '+00:00'))
            return str(int(dt.timestamp() * 1_000_000_000))
        except ValueError:
            pass
    elif isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
        return str(int(timestamp * 1_000_000_000))
    return str(int(time.time() * 1_000_000_000))


def convert_to_loki_streams(logs: List[Any]) -> List[Dict[str, Any]]:
    """
    Convert logs to Loki push format.

    Loki expects:
    {
        "streams": [
            {
                "stream": {"label1": "value1", "label2": "value2"},
                "values": [["timestamp_ns", "log_line"], ...]
            }
        ]
    }
    """
    streams: Dict[str, Dict[str, Any]] = {}

    for entry in logs:
        if not isinstance(entry, dict):
            entry = {"message": entry}

        labels = {
            "service": str(entry.get("service", "unknown")),
            "env": str(entry.get("env", "unknown")),
            "level": str(entry.get("level", "unknown")),
        }
        if isinstance(entry.get("labels"), dict):
            labels.update({str(k): str(v) for k, v in entry["labels"].items()})

        stream_key = "|".join(f"{k}={v}" for k, v in sorted(labels.items()))
        if stream_key not in streams:
            streams[stream_key] = {"stream": labels, "values": []}

        line = {k: v for k, v in entry.items() if k not in ("service", "env", "level", "labels", "timestamp")}
        streams[stream_key]["values"].append(
            [_timestamp_ns(entry.get("timestamp")), json.dumps(line, default=str)]
        )

    return list(streams.values())
