"""Dashboard computations built on top of the MongoRepository."""

from __future__ import annotations

import math
import re
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from statistics import mean
from typing import Dict, Any, Optional, Tuple, List

from pymongo.errors import DuplicateKeyError

from database import MongoRepository
from models import VALID_PLANS, BREAKDOWN_PLANS, DailyCounts

DEFAULT_CHART_DAYS = 30
WEEKLY_WINDOW_DAYS = 7
RECENT_EXAM_DAYS = 30


class RequestError(Exception):
    status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(RequestError):
    status = 400


class NotFoundError(RequestError):
    status = 404


class ConflictError(RequestError):
    status = 409


def _parse_date_param(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"Invalid date for '{name}': {value}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_range(start: Optional[str], end: Optional[str]) -> Tuple[Optional[datetime], Optional[datetime]]:
    return _parse_date_param(start, "from"), _parse_date_param(end, "to")


def build_date_filter(start: Optional[datetime], end: Optional[datetime], field: str = "createdAt") -> Dict[str, Any]:
    if not start and not end:
        return {}
    bounds: Dict[str, datetime] = {}
    if start:
        bounds["$gte"] = start
    if end:
        bounds["$lte"] = end
    return {field: bounds}


def weekly_filter(date_filter: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """With an active date window the weekly count covers that window,
    otherwise the trailing seven days."""
    if date_filter:
        return dict(date_filter)
    now = now or datetime.now(timezone.utc)
    return {"createdAt": {"$gte": now - timedelta(days=WEEKLY_WINDOW_DAYS)}}


def _plan_breakdown(counts: Dict[str, int]) -> Dict[str, int]:
    return {plan: counts.get(plan, 0) for plan in BREAKDOWN_PLANS}


def _positive_int(value: Optional[str], name: str, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{name}' must be a positive integer")
    if number < 1:
        raise ValidationError(f"'{name}' must be a positive integer")
    return number


def _leading_int(value: Any) -> Optional[int]:
    """Integer prefix of a number or numeric string, ``None`` when absent."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else int(value)
    if isinstance(value, str):
        match = re.match(r"\s*([+-]?\d+)", value)
        return int(match.group(1)) if match else None
    return None


def fill_daily_series(start: datetime, end: datetime, series: Dict[str, Dict[str, int]]) -> List[Dict[str, Any]]:
    """Zero-filled per-day points for every day from start through end."""
    points: Dict[str, DailyCounts] = {}
    cursor = start
    while cursor <= end:
        key = cursor.astimezone(timezone.utc).strftime("%Y-%m-%d")
        points[key] = DailyCounts(date=key)
        cursor += timedelta(days=1)
    for name, counts in series.items():
        for day, count in counts.items():
            point = points.get(day)
            if point is not None:
                setattr(point, name, count)
    return [asdict(points[day]) for day in sorted(points)]


class AnalyticsEngine:
    def __init__(self, repo: MongoRepository):
        self.repo = repo

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def users_summary(self, start: Optional[str], end: Optional[str]) -> Dict[str, Any]:
        date_filter = build_date_filter(*_parse_range(start, end))
        week_filter = weekly_filter(date_filter)
        users = self.repo.find_users(date_filter)
        return {
            "data": [user.to_dict() for user in users],
            "count": len(users),
            "weeklyCount": self.repo.count_users(week_filter),
            "subscriptionBreakdown": _plan_breakdown(self.repo.plan_counts(date_filter)),
            "weeklySubscriptionBreakdown": _plan_breakdown(self.repo.plan_counts(week_filter)),
        }

    def user_list(
        self,
        page: Optional[str],
        limit: Optional[str],
        start: Optional[str],
        end: Optional[str],
        id_filter: Optional[str] = None,
        subscription_type: Optional[str] = None,
        institutions_only: bool = False,
    ) -> Dict[str, Any]:
        page_number = _positive_int(page, "page", 1)
        page_size = _positive_int(limit, "limit", 10)

        filter_doc = build_date_filter(*_parse_range(start, end))
        if id_filter:
            filter_doc["id"] = {"$regex": re.escape(id_filter), "$options": "i"}
        if subscription_type:
            filter_doc["subscription.plan"] = subscription_type
        if institutions_only:
            filter_doc["integrationId"] = {"$nin": [None, ""]}

        total = self.repo.count_users(filter_doc)
        users = self.repo.find_users(filter_doc, skip=(page_number - 1) * page_size, limit=page_size)

        rows = []
        for user in users:
            row = user.to_dict()
            row.update({
                "email": user.id,
                "displayName": user.id.split("@")[0],
                "clerk_id": user.id,
            })
            rows.append(row)

        total_pages = math.ceil(total / page_size)
        return {
            "data": rows,
            "pagination": {
                "currentPage": page_number,
                "totalPages": total_pages,
                "totalUsers": total,
                "limit": page_size,
                "hasNextPage": page_number < total_pages,
                "hasPrevPage": page_number > 1,
            },
        }

    def search_user(self, query: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
        if not query:
            raise ValidationError("Search query parameter 'q' is required")
        escaped = re.escape(query)
        user = self.repo.find_user_matching(f"^{escaped}$") or self.repo.find_user_matching(escaped)
        if not user:
            return {"data": None, "message": "No user found matching the search query"}

        now = now or datetime.now(timezone.utc)
        exams = self.repo.find_exams({"userId": user.id})
        results = self.repo.find_results({"examId": {"$in": [exam.id for exam in exams]}})

        cutoff = now - timedelta(days=RECENT_EXAM_DAYS)
        recent_exams = sum(1 for exam in exams if exam.created_at and exam.created_at >= cutoff)

        user_doc = user.to_dict()
        # A stored value wins so manual overrides stick.
        if user.usage.exams_this_period is None:
            user_doc["usage"]["examsThisPeriod"] = recent_exams
        user_doc["email"] = user.resolved_email
        user_doc["displayName"] = user.display_name

        identifiers = [value.lower() for value in (user.id, user.email, user.username) if value]
        return {
            "data": {
                "user": user_doc,
                "exams": [exam.to_dict() for exam in exams],
                "results": [result.to_dict() for result in results],
                "counts": {"exams": len(exams), "results": len(results)},
                "searchMetadata": {
                    "query": query,
                    "searchedAt": now.isoformat(),
                    "isExactMatch": query.lower() in identifiers,
                },
            }
        }

    def update_plan(self, user_id: str, plan: Any) -> Dict[str, Any]:
        if not plan or plan not in VALID_PLANS:
            raise ValidationError("Invalid plan. Must be one of: " + ", ".join(VALID_PLANS))
        user = self.repo.update_user(user_id, {"subscription.plan": plan})
        if not user:
            raise NotFoundError("User not found")
        return {"user": user.to_dict(), "message": f"User plan updated to {plan} successfully"}

    def update_usage(self, user_id: str, exams_this_period: Any) -> Dict[str, Any]:
        if exams_this_period is None:
            raise ValidationError("examsThisPeriod is required")
        usage = _leading_int(exams_this_period)
        if usage is None or usage < 0:
            raise ValidationError("examsThisPeriod must be a valid non-negative number")
        user = self.repo.update_user(user_id, {"usage.examsThisPeriod": usage})
        if not user:
            raise NotFoundError("User not found")
        return {"user": user.to_dict(), "message": f"User usage updated to {usage} exams successfully"}

    def link_integration(self, user_id: str, integration_id: Any) -> Dict[str, Any]:
        integration_id = str(integration_id or "").strip()
        if not integration_id:
            raise ValidationError("integrationId is required")
        if not self.repo.integration_exists(integration_id):
            raise NotFoundError("Integration not found for the provided integrationId")
        user = self.repo.update_user(user_id, {"integrationId": integration_id})
        if not user:
            raise NotFoundError("User not found")
        return {"user": user.to_dict(), "message": "User integration updated successfully"}

    def unlink_integration(self, user_id: str) -> Dict[str, Any]:
        user = self.repo.update_user(user_id, {"integrationId": None})
        if not user:
            raise NotFoundError("User not found")
        return {"user": user.to_dict(), "message": "User integration removed successfully"}

    def update_partner_token(self, user_id: str, token: Any) -> Dict[str, Any]:
        value = None if token is None else (str(token).strip() or None)
        user = self.repo.update_user(user_id, {"integratPartnerToken": value})
        if not user:
            raise NotFoundError("User not found")
        return {"user": user.to_dict(), "message": "Integrat partner token updated successfully"}

    # ------------------------------------------------------------------
    # Exams, questions and answers
    # ------------------------------------------------------------------
    def exams_summary(self, start: Optional[str], end: Optional[str]) -> Dict[str, Any]:
        date_filter = build_date_filter(*_parse_range(start, end))
        exams = self.repo.find_exams(date_filter)
        return {
            "data": [exam.to_dict() for exam in exams],
            "count": len(exams),
            "weeklyCount": self.repo.count_exams(weekly_filter(date_filter)),
        }

    def questions_summary(self, start: Optional[str], end: Optional[str]) -> Dict[str, Any]:
        date_filter = build_date_filter(*_parse_range(start, end))
        exams = self.repo.find_exams(date_filter)
        weekly_exams = self.repo.find_exams(weekly_filter(date_filter))
        return {
            "data": {
                "totalQuestions": sum(len(exam.questions) for exam in exams),
                "totalQuestionsFromCount": sum(exam.question_count for exam in exams),
                "examCount": len(exams),
            },
            "weeklyCount": sum(len(exam.questions) for exam in weekly_exams),
        }

    def answers(self, start: Optional[str], end: Optional[str]) -> Dict[str, Any]:
        date_filter = build_date_filter(*_parse_range(start, end))
        exams = self.repo.find_exams(date_filter)
        answers: List[Dict[str, Any]] = []
        for exam in exams:
            for index, question in enumerate(exam.questions, start=1):
                answers.append({
                    "examId": exam.id,
                    "examTitle": exam.title,
                    "questionIndex": index,
                    "question": question.question,
                    "correctAnswer": question.correct_answer,
                })
        weekly_exams = self.repo.find_exams(weekly_filter(date_filter))
        return {
            "data": answers,
            "count": len(answers),
            "weeklyCount": sum(len(exam.questions) for exam in weekly_exams),
            "summary": {"totalExams": len(exams), "totalAnswers": len(answers)},
        }

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    def results(
        self,
        start: Optional[str],
        end: Optional[str],
        exam_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        date_filter = build_date_filter(*_parse_range(start, end))
        filter_doc = dict(date_filter)
        if exam_id:
            filter_doc["examId"] = exam_id
        if email:
            filter_doc["email"] = email
        results = self.repo.find_results(filter_doc)

        week_doc = weekly_filter(date_filter)
        week_doc.update({key: value for key, value in filter_doc.items() if key != "createdAt"})

        percents = [result.percent for result in results]
        return {
            "data": [result.to_dict() for result in results],
            "count": len(results),
            "weeklyCount": self.repo.count_results(week_doc),
            "averagePercentage": round(mean(percents), 2) if percents else 0,
        }

    def delete_result(self, result_id: str) -> Dict[str, Any]:
        result = self.repo.delete_result(result_id)
        if not result:
            raise NotFoundError("Result not found")
        return {"data": result.to_dict(), "message": "Result deleted successfully"}

    # ------------------------------------------------------------------
    # Chart data
    # ------------------------------------------------------------------
    def chart_data(self, start: Optional[str], end: Optional[str], now: Optional[datetime] = None) -> Dict[str, Any]:
        start_dt, end_dt = _parse_range(start, end)
        now = now or datetime.now(timezone.utc)
        end_dt = end_dt or now
        start_dt = start_dt or now - timedelta(days=DEFAULT_CHART_DAYS)

        series = {
            "users": self.repo.daily_counts("users", start_dt, end_dt),
            "exams": self.repo.daily_counts("exams", start_dt, end_dt),
            "questions": self.repo.daily_counts("exams", start_dt, end_dt, count_questions=True),
            "answers": self.repo.daily_counts("results", start_dt, end_dt),
        }
        return {
            "data": fill_daily_series(start_dt, end_dt, series),
            "dateRange": {"from": start_dt.isoformat(), "to": end_dt.isoformat()},
        }

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------
    def list_integrations(self) -> Dict[str, Any]:
        integrations = self.repo.list_integrations()
        return {"data": [item.to_dict() for item in integrations], "count": len(integrations)}

    def create_integration(self, name: Any) -> Dict[str, Any]:
        name = str(name or "").strip()
        if not name:
            raise ValidationError("integrationName is required")
        try:
            integration = self.repo.create_integration(name)
        except DuplicateKeyError:
            raise ConflictError("Integration already exists (duplicate integrationId)")
        return {"data": integration.to_dict()}

    def delete_integration(self, object_id: Optional[str]) -> Dict[str, Any]:
        if not object_id:
            raise ValidationError("Integration id is required")
        integration = self.repo.delete_integration(object_id)
        if not integration:
            raise NotFoundError("Integration not found")
        return {"data": integration.to_dict(), "message": "Integration deleted successfully"}
