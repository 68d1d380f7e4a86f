# ingestion/services.py
"""
HTTP clients for the external classification / insight services.

Every failure mode (unconfigured URL, transport error, non-2xx, body that is
not the expected JSON shape) is raised as ServiceUnavailable so callers only
ever have one thing to fall back on.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from core.config import settings
from ingestion.errors import ServiceUnavailable

logger = logging.getLogger(__name__)

TRADING_HEADER_HINTS = ("symbol", "pnl", "price")


def _requests_post_json(
    url: str, headers: dict, json_body: dict, timeout: int = 20
) -> Tuple[int, Any, str]:
    try:
        r = requests.post(url, headers=headers, json=json_body, timeout=timeout)
        status = r.status_code
        text_preview = (r.text or "")[:600]
        try:
            data = r.json()
        except ValueError:
            data = None
        return status, data, text_preview
    except requests.RequestException as e:
        return 599, None, f"{type(e).__name__}: {e}"


def looks_like_trading_headers(headers: Sequence[str]) -> bool:
    """Offline stand-in for the validation service."""
    lowered = [str(h).lower() for h in headers]
    return any(hint in h for h in lowered for hint in TRADING_HEADER_HINTS)


def _str_list(v: Any) -> List[str]:
    if not isinstance(v, list):
        return []
    return [str(x) for x in v if isinstance(x, (str, int, float)) and str(x).strip()]


class IngestionServices:
    def __init__(
        self,
        *,
        mapping_url: Optional[str] = None,
        validation_url: Optional[str] = None,
        insights_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: int = 20,
    ) -> None:
        self.mapping_url = mapping_url
        self.validation_url = validation_url
        self.insights_url = insights_url
        self.api_key = api_key
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "IngestionServices":
        return cls(
            mapping_url=settings.COLUMN_MAPPING_URL,
            validation_url=settings.CSV_VALIDATION_URL,
            insights_url=settings.INSIGHTS_URL,
            api_key=settings.SERVICE_API_KEY,
            timeout=settings.SERVICE_TIMEOUT_SEC,
        )

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, name: str, url: Optional[str], body: dict) -> Dict[str, Any]:
        if not url:
            raise ServiceUnavailable(name, "not configured")

        status, data, preview = await asyncio.to_thread(
            _requests_post_json, url, self._headers(), body, self.timeout
        )
        if status >= 400:
            raise ServiceUnavailable(name, f"HTTP {status}: {preview}")
        if not isinstance(data, dict):
            raise ServiceUnavailable(name, "response was not a JSON object")
        return data

    async def validate_content(self, headers: Sequence[str], sample: Sequence[dict]) -> bool:
        data = await self._post(
            "csv validation",
            self.validation_url,
            {"csvHeaders": list(headers), "csvDataSample": list(sample)},
        )
        verdict = data.get("is_trading_related")
        if not isinstance(verdict, bool):
            raise ServiceUnavailable("csv validation", "missing is_trading_related")
        return verdict

    async def map_columns(self, headers: Sequence[str], sample: Sequence[dict]) -> Dict[str, Any]:
        data = await self._post(
            "column mapping",
            self.mapping_url,
            {"csvHeaders": list(headers), "csvDataSample": list(sample)},
        )
        mapping = data.get("mapping")
        if not isinstance(mapping, dict):
            raise ServiceUnavailable("column mapping", "missing mapping object")
        return mapping

    async def generate_insights(self, trades: Sequence[dict]) -> Dict[str, Any]:
        data = await self._post("insights", self.insights_url, {"trades": list(trades)})
        if "error" in data:
            raise ServiceUnavailable("insights", str(data.get("error")))

        key_insight = data.get("ai_key_insight")
        return {
            "ai_strengths": _str_list(data.get("ai_strengths")),
            "ai_mistakes": _str_list(data.get("ai_mistakes")),
            "ai_fixes": _str_list(data.get("ai_fixes")),
            "ai_key_insight": str(key_insight) if key_insight is not None else None,
        }
