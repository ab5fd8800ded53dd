"""OpenAI billing lookup converted to BRL for the cost cards."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Any, List, Optional, Tuple

import requests

from models import CostLine

OPENAI_COSTS_URL = "https://api.openai.com/v1/organization/costs"
EXCHANGE_RATE_URL = "https://api.exchangerate-api.com/v4/latest/USD"
DEFAULT_USD_TO_BRL = 5.2
REQUEST_TIMEOUT = 20


class UpstreamError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


def summarize_costs(buckets: List[Dict[str, Any]], rate: float) -> List[CostLine]:
    """Sum bucket results per (model, type) and convert them with ``rate``.

    Line items look like ``"gpt-4o-mini-2024-07-18, input"``; anything
    without a type part is skipped.
    """
    totals: Dict[Tuple[str, str], float] = defaultdict(float)
    for bucket in buckets:
        for result in bucket.get("results", []) or []:
            parts = (result.get("line_item") or "").split(", ")
            if len(parts) < 2:
                continue
            amount = (result.get("amount") or {}).get("value") or 0
            totals[(parts[0], parts[1])] += float(amount)

    lines = [
        CostLine(model=model, type=kind, total_cost=round(total * rate, 4))
        for (model, kind), total in totals.items()
    ]
    lines.sort(key=lambda line: (line.model, line.type))
    return lines


class CostReporter:
    def __init__(self, api_key: Optional[str], session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def usd_to_brl_rate(self) -> float:
        try:
            response = self.session.get(EXCHANGE_RATE_URL, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
            return float(response.json()["rates"]["BRL"])
        except (requests.RequestException, KeyError, TypeError, ValueError):
            logging.warning("exchange rate lookup failed, using default rate %s", DEFAULT_USD_TO_BRL, exc_info=True)
            return DEFAULT_USD_TO_BRL

    def fetch_buckets(self, start_time: str, end_time: str) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "start_time": start_time,
            "end_time": end_time,
            "group_by": "line_item",
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        buckets: List[Dict[str, Any]] = []
        while True:
            response = self.session.get(OPENAI_COSTS_URL, params=params, headers=headers, timeout=REQUEST_TIMEOUT)
            if not response.ok:
                raise UpstreamError(response.status_code, f"OpenAI API error: {response.status_code} {response.text}")
            payload = response.json()
            buckets.extend(payload.get("data", []) or [])
            next_page = payload.get("next_page")
            if not payload.get("has_more") or not next_page:
                break
            params["page"] = next_page
        return buckets

    def costs(self, start_time: str, end_time: str) -> List[Dict[str, Any]]:
        rate = self.usd_to_brl_rate()
        buckets = self.fetch_buckets(start_time, end_time)
        return [
            {"model": line.model, "type": line.type, "total_cost": line.total_cost}
            for line in summarize_costs(buckets, rate)
        ]
