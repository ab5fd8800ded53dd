"""Core data models used by the Kintal dashboard service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict, Any


VALID_PLANS = [
    "free",
    "pro",
    "premium",
    "enterprise",
    "trial",
    "monthly",
    "semi-annual",
    "annual",
    "admin",
    "custom",
]

BREAKDOWN_PLANS = ["trial", "monthly", "semi-annual", "annual", "custom"]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Subscription:
    plan: Optional[str] = None
    status: Optional[str] = None


@dataclass
class Usage:
    exams_this_period: Optional[int] = None
    exams_this_period_reset_date: Optional[datetime] = None


@dataclass
class User:
    id: str
    email: Optional[str]
    username: Optional[str]
    subscription: Subscription
    usage: Usage
    integration_id: Optional[str]
    integrat_partner_token: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    object_id: str = ""

    @property
    def resolved_email(self) -> str:
        return self.email or self.id

    @property
    def display_name(self) -> str:
        if self.username:
            return self.username
        email = self.resolved_email
        if "@" in email:
            return email.split("@")[0]
        return self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.object_id,
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "subscription": {
                "plan": self.subscription.plan,
                "status": self.subscription.status,
            },
            "usage": {
                "examsThisPeriod": self.usage.exams_this_period,
                "examsThisPeriodResetDate": _iso(self.usage.exams_this_period_reset_date),
            },
            "integrationId": self.integration_id,
            "integratPartnerToken": self.integrat_partner_token,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class Question:
    question: str
    context: Optional[str]
    options: List[str]
    correct_answer: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "context": self.context,
            "options": self.options,
            "correctAnswer": self.correct_answer,
        }


@dataclass
class Exam:
    id: str
    title: str
    user_id: str
    class_id: Optional[str]
    description: Optional[str]
    question_count: int
    duration: Optional[int]
    difficulty: Optional[str]
    is_public: bool
    share_id: Optional[str]
    questions: List[Question]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "title": self.title,
            "userId": self.user_id,
            "classId": self.class_id,
            "description": self.description,
            "questionCount": self.question_count,
            "duration": self.duration,
            "difficulty": self.difficulty,
            "isPublic": self.is_public,
            "shareId": self.share_id,
            "questions": [question.to_dict() for question in self.questions],
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class Result:
    id: str
    exam_id: str
    class_id: Optional[str]
    email: Optional[str]
    score: float
    percentage: float
    exam_title: Optional[str]
    exam_question_count: int
    created_at: Optional[datetime]

    @property
    def percent(self) -> float:
        """Percentage is stored as a 0..1 fraction."""
        return round(self.percentage * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "examId": self.exam_id,
            "classId": self.class_id,
            "email": self.email,
            "score": self.score,
            "percentage": self.percentage,
            "percent": self.percent,
            "examTitle": self.exam_title,
            "examQuestionCount": self.exam_question_count,
            "createdAt": _iso(self.created_at),
        }


@dataclass
class Integration:
    id: str
    integration_id: str
    integration_name: str
    created_at: Optional[datetime]
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "integrationId": self.integration_id,
            "integrationName": self.integration_name,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class DailyCounts:
    date: str
    users: int = 0
    exams: int = 0
    questions: int = 0
    answers: int = 0


@dataclass
class CostLine:
    model: str
    type: str
    total_cost: float


@dataclass
class ErrorEvent:
    id: Optional[str]
    timestamp: Optional[str]
    error_type: str
    error_types: List[str] = field(default_factory=list)
    error_message: str = "No message"
    error_stack: str = ""
    url: str = "Unknown"
    user_agent: str = "Unknown"
    user_id: str = "Anonymous"
    severity: str = "error"
    source: str = "javascript"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "errorType": self.error_type,
            "errorTypes": self.error_types,
            "errorMessage": self.error_message,
            "errorStack": self.error_stack,
            "url": self.url,
            "userAgent": self.user_agent,
            "userId": self.user_id,
            "severity": self.severity,
            "source": self.source,
        }
