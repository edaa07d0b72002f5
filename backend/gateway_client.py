"""
Gateway Client for the Whish payment gateway.

Two calls matter: opening a collect session and querying its status.
Both are bounded by a timeout. Transport failures never escape this
module as raw aiohttp errors; they become UpstreamError subclasses or,
for status queries, the "error" outcome.
"""
import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

import aiohttp

from config import Settings
from errors import GatewayTransportError, UpstreamError
from models import GATEWAY_ERROR, GATEWAY_FAILED, GATEWAY_PENDING, GATEWAY_SUCCESS

logger = logging.getLogger(__name__)

CREATE_PATH = "payment/whish"
STATUS_PATH = "payment/collect/status"
PROBE_PATH = "payment/account/balance"

KNOWN_STATUSES = (GATEWAY_SUCCESS, GATEWAY_FAILED, GATEWAY_PENDING)


def _parse_body(raw: bytes) -> Dict[str, Any]:
    try:
        data = json.loads(raw.decode("utf-8") if raw else "{}")
    except ValueError:
        # covers UnicodeDecodeError
        return {}
    return data if isinstance(data, dict) else {}


class GatewayClient:
    """Thin aiohttp wrapper around the gateway's HTTP API"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.base_url = settings.whish_api_url
        if not self.base_url.endswith("/"):
            self.base_url += "/"

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def probe(self) -> Optional[int]:
        """
        Best-effort reachability check.

        The result is only logged; any failure is swallowed so it can
        never change the outcome of the real request.
        """
        timeout = aiohttp.ClientTimeout(total=self.settings.create_timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(
                    self._url(PROBE_PATH),
                    headers=self.settings.gateway_headers,
                ) as response:
                    logger.info(
                        "Gateway connectivity probe: status=%s reason=%s",
                        response.status,
                        response.reason,
                    )
                    return response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Gateway connectivity probe failed: %r", e)
            return None

    async def create_collect(self, payload: Dict[str, Any]) -> str:
        """
        Open a payment session and return the hosted checkout URL.

        Single attempt. Raises GatewayTransportError on timeout or network
        failure and UpstreamError when the gateway refuses the session.
        """
        timeout = aiohttp.ClientTimeout(total=self.settings.create_timeout_seconds)
        start_time = time.time()
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    self._url(CREATE_PATH),
                    json=payload,
                    headers=self.settings.gateway_headers,
                ) as response:
                    status = response.status
                    raw = await response.read()
        except asyncio.TimeoutError:
            logger.error(
                "Gateway create request timed out after %.1fs",
                self.settings.create_timeout_seconds,
            )
            raise GatewayTransportError("Gateway request timed out")
        except aiohttp.ClientError as e:
            logger.error("Gateway create request failed: %r", e)
            raise GatewayTransportError(f"Gateway request failed: {e}")

        latency_ms = (time.time() - start_time) * 1000
        data = _parse_body(raw)
        logger.info(
            "Gateway create response: http=%s status=%s code=%s latency_ms=%.0f",
            status,
            data.get("status"),
            data.get("code"),
            latency_ms,
        )

        body = data.get("data")
        collect_url = body.get("collectUrl") if isinstance(body, dict) else None
        if not (200 <= status < 300) or not data.get("status") or not collect_url:
            dialog = data.get("dialog")
            raise UpstreamError(
                "Create payment failed",
                code=data.get("code") if data.get("code") is not None else status,
                detail=dialog.get("message") if isinstance(dialog, dict) else None,
            )
        return collect_url

    async def query_status(self, external_id: int) -> str:
        """One status query; returns a collect status or "error" """
        timeout = aiohttp.ClientTimeout(total=self.settings.status_timeout_seconds)
        payload = {"currency": self.settings.currency, "externalId": external_id}
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    self._url(STATUS_PATH),
                    json=payload,
                    headers=self.settings.gateway_headers,
                ) as response:
                    status = response.status
                    raw = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Gateway status query failed for %s: %r", external_id, e)
            return GATEWAY_ERROR

        if not (200 <= status < 300):
            logger.error("Gateway status query HTTP error %s for %s", status, external_id)
            return GATEWAY_ERROR

        data = _parse_body(raw)
        if not data.get("status"):
            logger.warning("Gateway status query returned error code %s", data.get("code"))
            return GATEWAY_ERROR

        body = data.get("data")
        collect_status = body.get("collectStatus") if isinstance(body, dict) else None
        if collect_status not in KNOWN_STATUSES:
            logger.error("Invalid status response structure from gateway: %r", collect_status)
            return GATEWAY_ERROR
        return collect_status

    async def fetch_collect_status(self, external_id: int) -> str:
        """
        Status query with a short bounded retry.

        A payment can complete a moment before it becomes queryable, so
        "pending" and "error" are retried with linear backoff.
        """
        attempts = max(1, self.settings.status_attempts)
        result = GATEWAY_ERROR
        for attempt in range(1, attempts + 1):
            result = await self.query_status(external_id)
            if result in (GATEWAY_SUCCESS, GATEWAY_FAILED):
                return result
            if attempt < attempts:
                logger.info(
                    "Gateway status for %s is %s (attempt %d/%d), retrying",
                    external_id,
                    result,
                    attempt,
                    attempts,
                )
                await asyncio.sleep(self.settings.status_backoff_ms * attempt / 1000.0)
        return result
