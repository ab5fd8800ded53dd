"""PostHog `$exception` events reshaped for the error monitor page."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional

import requests

from models import ErrorEvent

DEFAULT_POSTHOG_HOST = "https://us.posthog.com"
EXCEPTION_EVENT = "$exception"
REQUEST_TIMEOUT = 20
GROUP_BY_OPTIONS = ("hour", "day", "week")
MAX_EXAMPLES = 3

SEVERITY_LEVELS = {"error": 1, "warning": 2, "critical": 3, "fatal": 4}


class MonitorConfigError(Exception):
    pass


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def error_types_of(properties: Dict[str, Any]) -> List[str]:
    types = properties.get("$exception_types")
    if isinstance(types, list) and types:
        return [str(item) for item in types]
    return [properties.get("$exception_type") or "Unknown"]


def severity_class(severity: Optional[str]) -> str:
    """Map a PostHog severity onto the chart series it is counted in."""
    if severity in ("critical", "fatal"):
        return "critical"
    if severity in ("warning", "warn"):
        return "warnings"
    return "errors"


def process_error(event: Dict[str, Any]) -> ErrorEvent:
    properties = event.get("properties") or {}
    types = properties.get("$exception_types")
    return ErrorEvent(
        id=event.get("id"),
        timestamp=event.get("timestamp"),
        error_type=properties.get("$exception_type") or "Unknown",
        error_types=list(types) if isinstance(types, list) else [],
        error_message=properties.get("$exception_message") or "No message",
        error_stack=properties.get("$exception_stack_trace_raw") or "",
        url=properties.get("$current_url") or "Unknown",
        user_agent=properties.get("$user_agent") or "Unknown",
        user_id=properties.get("distinct_id") or "Anonymous",
        severity=properties.get("$exception_severity") or "error",
        source=properties.get("$exception_source") or "javascript",
    )


def bucket_key(moment: datetime, group_by: str) -> str:
    if group_by == "day":
        return moment.strftime("%Y-%m-%d")
    if group_by == "week":
        # Weeks start on Sunday.
        week_start = moment - timedelta(days=(moment.weekday() + 1) % 7)
        return week_start.strftime("%Y-%m-%d")
    return f"{moment.hour:02d}:00"


def week_label(week_start: datetime) -> str:
    start_of_year = datetime(week_start.year, 1, 1, tzinfo=week_start.tzinfo)
    days_since_start = (week_start - start_of_year).days
    first_weekday = (start_of_year.weekday() + 1) % 7
    return f"Sem {math.ceil((days_since_start + first_weekday + 1) / 7)}"


def _empty_point(key: str) -> Dict[str, Any]:
    return {"time": key, "errors": 0, "warnings": 0, "critical": 0, "total": 0}


def error_stats(events: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Totals, per-type counts and an hourly series, each counted once per
    error type carried by an event."""
    total = critical = warnings = 0
    type_counts: Dict[str, int] = defaultdict(int)
    hourly: Dict[str, Dict[str, Any]] = {}
    for event in events:
        properties = event.get("properties") or {}
        types = error_types_of(properties)
        kind = severity_class(properties.get("$exception_severity") or "error")

        total += len(types)
        if kind == "critical":
            critical += len(types)
        elif kind == "warnings":
            warnings += len(types)
        for name in types:
            type_counts[name] += 1

        moment = _parse_timestamp(event.get("timestamp"))
        if moment is None:
            continue
        key = bucket_key(moment, "hour")
        point = hourly.setdefault(key, {"time": key, "errors": 0, "warnings": 0, "critical": 0})
        point[kind] += len(types)

    return {
        "totalErrors": total,
        "criticalErrors": critical,
        "warnings": warnings,
        "errorTypes": dict(type_counts),
        "chartData": [hourly[key] for key in sorted(hourly)],
    }


def chart_series(events: List[Dict[str, Any]], group_by: str) -> List[Dict[str, Any]]:
    points: Dict[str, Dict[str, Any]] = {}
    for event in events:
        moment = _parse_timestamp(event.get("timestamp"))
        if moment is None:
            continue
        key = bucket_key(moment, group_by)
        point = points.setdefault(key, _empty_point(key))
        severity = (event.get("properties") or {}).get("$exception_severity") or "error"
        point[severity_class(severity)] += 1
        point["total"] += 1

    series = [points[key] for key in sorted(points)]
    for point in series:
        if group_by == "day":
            day = datetime.strptime(point["time"], "%Y-%m-%d")
            point["formattedTime"] = day.strftime("%d/%m")
        elif group_by == "week":
            week_start = datetime.strptime(point["time"], "%Y-%m-%d").replace(tzinfo=timezone.utc)
            point["formattedTime"] = week_label(week_start)
    return series


def error_type_breakdown(events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    details: Dict[str, Dict[str, Any]] = {}
    for event in events:
        properties = event.get("properties") or {}
        message = properties.get("$exception_message") or "No message"
        severity = properties.get("$exception_severity") or "error"
        timestamp = event.get("timestamp")

        for name in error_types_of(properties):
            entry = details.setdefault(name, {
                "type": name,
                "count": 0,
                "lastOccurrence": timestamp,
                "severity": severity,
                "examples": [],
            })
            entry["count"] += 1

            seen = _parse_timestamp(timestamp)
            last = _parse_timestamp(entry["lastOccurrence"])
            if seen and (last is None or seen > last):
                entry["lastOccurrence"] = timestamp

            if SEVERITY_LEVELS.get(severity, 1) > SEVERITY_LEVELS.get(entry["severity"], 1):
                entry["severity"] = severity

            if message != "No message" and len(entry["examples"]) < MAX_EXAMPLES and message not in entry["examples"]:
                entry["examples"].append(message)

    return sorted(details.values(), key=lambda entry: entry["count"], reverse=True)


class ErrorMonitor:
    def __init__(
        self,
        api_key: Optional[str],
        project_id: Optional[str],
        host: str = DEFAULT_POSTHOG_HOST,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.project_id = project_id
        self.host = host.rstrip("/")
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.project_id)

    def fetch_events(
        self,
        after: Optional[str] = None,
        before: Optional[str] = None,
        limit: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.configured:
            raise MonitorConfigError("PostHog configuration missing")
        params: Dict[str, Any] = {"event": EXCEPTION_EVENT}
        if after:
            params["after"] = after
        if before:
            params["before"] = before
        if limit:
            params["limit"] = limit
        url = f"{self.host}/api/projects/{self.project_id}/events/"
        response = self.session.get(
            url,
            params=params,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT,
        )
        if not response.ok:
            raise RuntimeError(f"PostHog API error: {response.status_code} {response.reason}")
        return response.json()

    def errors(self, start: Optional[str], end: Optional[str], limit: Optional[str]) -> Dict[str, Any]:
        payload = self.fetch_events(start, end, limit or "100")
        processed = [process_error(event).to_dict() for event in payload.get("results") or []]
        return {"data": processed, "count": len(processed), "total": payload.get("count") or 0}

    def stats(self, start: Optional[str], end: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
        events = self.fetch_events(start, end).get("results") or []
        stats = error_stats(events)
        if not start and not end:
            stats["weeklyCount"] = stats["totalErrors"]
            return stats

        now = now or datetime.now(timezone.utc)
        week_ago = (now - timedelta(days=7)).isoformat()
        try:
            weekly = self.fetch_events(after=week_ago).get("results") or []
            stats["weeklyCount"] = len(weekly)
        except RuntimeError:
            logging.warning("weekly error count lookup failed", exc_info=True)
            stats["weeklyCount"] = 0
        return stats

    def chart_data(self, start: Optional[str], end: Optional[str], group_by: Optional[str]) -> Dict[str, Any]:
        group_by = group_by or ("hour" if start or end else "day")
        bucket = group_by if group_by in GROUP_BY_OPTIONS else "hour"
        events = self.fetch_events(start, end).get("results") or []
        return {
            "data": chart_series(events, bucket),
            "dateRange": {"from": start, "to": end},
            "groupBy": group_by,
        }

    def error_types(self, start: Optional[str], end: Optional[str], limit: Optional[str]) -> Dict[str, Any]:
        events = self.fetch_events(start, end, limit or "1000").get("results") or []
        breakdown = error_type_breakdown(events)
        return {"data": breakdown, "total": len(breakdown)}
