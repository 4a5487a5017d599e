"""Verimor telephony CDR (call detail record) client."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from supportdesk.core.config import settings
from supportdesk.core.exceptions import PermanentValidationError, TransientIntegrationError
from supportdesk.services.commerce_api import raise_for_provider_status

logger = logging.getLogger(__name__)

HTTPX_TIMEOUT = httpx.Timeout(30.0, connect=5.0)
PAGE_LIMIT = 1000
MAX_PAGES = 20

_DATETIME_FORMATS = ("%Y-%m-%d %H:%M:%S %z", "%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%d %H:%M:%S")


def parse_cdr_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value).strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
        for fmt in _DATETIME_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        logger.warning("Unparseable CDR timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class CdrRecord:
    """One call as reported by the PBX."""

    unique_id: str
    direction: str  # "in" | "out"
    customer_num: str | None
    pbx_num: str | None
    missed: bool
    disposition: str
    billable_seconds: int
    start_time: datetime | None
    end_time: datetime | None

    @property
    def phone_number(self) -> str | None:
        return self.customer_num if self.direction == "in" else self.pbx_num

    @classmethod
    def from_api(cls, data: dict) -> "CdrRecord":
        unique_id = str(data.get("unique_id") or data.get("uuid") or "").strip()
        if not unique_id:
            raise PermanentValidationError("CDR record without unique_id")
        return cls(
            unique_id=unique_id,
            direction="in" if str(data.get("direction", "in")).lower() in ("in", "inbound") else "out",
            customer_num=(str(data["customer_num"]) if data.get("customer_num") else None),
            pbx_num=(str(data["pbx_num"]) if data.get("pbx_num") else None),
            missed=str(data.get("missed", 0)) in ("1", "true", "True"),
            disposition=str(data.get("disposition") or "").upper(),
            billable_seconds=int(data.get("billable_seconds") or 0),
            start_time=parse_cdr_datetime(data.get("start_time") or data.get("start_stamp")),
            end_time=parse_cdr_datetime(data.get("end_time") or data.get("end_stamp")),
        )


class CdrClient:
    """Verimor Bulutsantralim CDR API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.VERIMOR_API_KEY
        self.base_url = (base_url or settings.VERIMOR_BASE_URL).rstrip("/")
        self._transport = transport

    async def _get_page(self, client: httpx.AsyncClient, params: dict) -> list[dict]:
        try:
            response = await client.get(f"{self.base_url}/cdrs", params=params)
        except httpx.TimeoutException as exc:
            raise TransientIntegrationError("Verimor API timeout") from exc
        except httpx.TransportError as exc:
            raise TransientIntegrationError(f"Verimor API connection failed: {type(exc).__name__}") from exc
        raise_for_provider_status(response, "Verimor")

        try:
            body = response.json()
        except ValueError as exc:
            raise TransientIntegrationError("Verimor API returned a non-JSON body") from exc
        if isinstance(body, dict):
            body = body.get("cdrs") or body.get("data") or []
        return list(body)

    async def list_calls(self, from_ts: datetime, to_ts: datetime) -> list[CdrRecord]:
        """All CDRs that started within [from_ts, to_ts]."""
        if not self.api_key:
            raise PermanentValidationError("Verimor API key not configured")

        records: list[CdrRecord] = []
        async with httpx.AsyncClient(timeout=HTTPX_TIMEOUT, transport=self._transport) as client:
            for page in range(1, MAX_PAGES + 1):
                rows = await self._get_page(
                    client,
                    {
                        "key": self.api_key,
                        "start_stamp_from": from_ts.isoformat(),
                        "start_stamp_to": to_ts.isoformat(),
                        "limit": PAGE_LIMIT,
                        "page": page,
                    },
                )
                for row in rows:
                    try:
                        records.append(CdrRecord.from_api(row))
                    except (PermanentValidationError, TypeError, ValueError) as exc:
                        logger.warning("Skipping malformed CDR row: %s", exc)
                if len(rows) < PAGE_LIMIT:
                    break
            else:
                logger.warning("Verimor CDR listing truncated at %s pages", MAX_PAGES)

        logger.info("Fetched %s CDR record(s) from Verimor", len(records))
        return records
