"""MongoDB access layer for the Kintal dashboard service."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient, ReturnDocument, DESCENDING
from pymongo.collection import Collection
from pymongo.database import Database

from models import (
    User,
    Subscription,
    Usage,
    Exam,
    Question,
    Result,
    Integration,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, dict) and "$date" in value:
        return _parse_datetime(value["$date"])
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        try:
            normalized = value.replace("Z", "+00:00")
            dt = datetime.fromisoformat(normalized)
            return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
        except ValueError:
            pass
        # numeric string
        try:
            return _parse_datetime(float(value))
        except ValueError:
            return None
    return None


def _to_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _user_from_doc(doc: Dict[str, Any]) -> User:
    subscription = doc.get("subscription") or {}
    usage = doc.get("usage") or {}
    exams_this_period = usage.get("examsThisPeriod")
    return User(
        id=str(doc.get("id", "")),
        email=doc.get("email"),
        username=doc.get("username"),
        subscription=Subscription(
            plan=subscription.get("plan"),
            status=subscription.get("status"),
        ),
        usage=Usage(
            exams_this_period=None if exams_this_period is None else _to_int(exams_this_period),
            exams_this_period_reset_date=_parse_datetime(usage.get("examsThisPeriodResetDate")),
        ),
        integration_id=doc.get("integrationId"),
        integrat_partner_token=doc.get("integratPartnerToken"),
        created_at=_parse_datetime(doc.get("createdAt")),
        updated_at=_parse_datetime(doc.get("updatedAt")),
        object_id=str(doc.get("_id", "")),
    )


def _exam_from_doc(doc: Dict[str, Any]) -> Exam:
    questions: List[Question] = []
    for item in doc.get("questions", []) or []:
        questions.append(Question(
            question=item.get("question", ""),
            context=item.get("context"),
            options=item.get("options", []) or [],
            correct_answer=item.get("correctAnswer"),
        ))
    return Exam(
        id=str(doc.get("_id", "")),
        title=doc.get("title", ""),
        user_id=doc.get("userId", ""),
        class_id=doc.get("classId"),
        description=doc.get("description"),
        question_count=_to_int(doc.get("questionCount")),
        duration=doc.get("duration"),
        difficulty=doc.get("difficulty"),
        is_public=bool(doc.get("isPublic", False)),
        share_id=doc.get("shareId"),
        questions=questions,
        created_at=_parse_datetime(doc.get("createdAt")),
        updated_at=_parse_datetime(doc.get("updatedAt")),
    )


def _result_from_doc(doc: Dict[str, Any]) -> Result:
    return Result(
        id=str(doc.get("_id", "")),
        exam_id=str(doc.get("examId", "")),
        class_id=doc.get("classId"),
        email=doc.get("email"),
        score=_to_float(doc.get("score")),
        percentage=_to_float(doc.get("percentage")),
        exam_title=doc.get("examTitle"),
        exam_question_count=_to_int(doc.get("examQuestionCount")),
        created_at=_parse_datetime(doc.get("createdAt")),
    )


def _integration_from_doc(doc: Dict[str, Any]) -> Integration:
    return Integration(
        id=str(doc.get("_id", "")),
        integration_id=doc.get("integrationId", ""),
        integration_name=doc.get("integrationName", ""),
        created_at=_parse_datetime(doc.get("createdAt")),
        updated_at=_parse_datetime(doc.get("updatedAt")),
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class MongoRepository:
    def __init__(self, uri: str, database: str):
        self.client = MongoClient(uri, tz_aware=True)
        self.db: Database = self.client[database]
        self.users: Collection = self.db["users"]
        self.exams: Collection = self.db["exams"]
        self.results: Collection = self.db["results"]
        self.integrations: Collection = self.db["integrations"]
        logging.info("Using MongoDB database %s", database)

    def ensure_indexes(self) -> None:
        self.integrations.create_index("integrationId", unique=True)

    def ping(self) -> None:
        self.users.find_one({}, {"_id": 1})

    # Users -----------------------------------------------------------------
    def find_users(self, filter_doc: Dict[str, Any], skip: int = 0, limit: int = 0) -> List[User]:
        cursor = self.users.find(filter_doc, {"__v": 0}).sort("createdAt", DESCENDING)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return [_user_from_doc(doc) for doc in cursor]

    def count_users(self, filter_doc: Dict[str, Any]) -> int:
        return self.users.count_documents(filter_doc)

    def plan_counts(self, filter_doc: Dict[str, Any]) -> Dict[str, int]:
        pipeline = [
            {"$match": filter_doc},
            {"$group": {"_id": "$subscription.plan", "count": {"$sum": 1}}},
        ]
        counts: Dict[str, int] = {}
        for row in self.users.aggregate(pipeline):
            if row.get("_id"):
                counts[row["_id"]] = int(row.get("count", 0))
        return counts

    def find_user_matching(self, pattern: str) -> Optional[User]:
        """Return the first user whose id, email or username matches a
        case-insensitive regex."""
        regex = {"$regex": pattern, "$options": "i"}
        doc = self.users.find_one(
            {"$or": [{"id": regex}, {"email": regex}, {"username": regex}]},
            {"__v": 0},
        )
        return _user_from_doc(doc) if doc else None

    def update_user(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        changes = dict(fields)
        changes["updatedAt"] = datetime.now(timezone.utc)
        doc = self.users.find_one_and_update(
            {"id": user_id},
            {"$set": changes},
            projection={"__v": 0},
            return_document=ReturnDocument.AFTER,
        )
        return _user_from_doc(doc) if doc else None

    # Exams -----------------------------------------------------------------
    def find_exams(self, filter_doc: Dict[str, Any]) -> List[Exam]:
        cursor = self.exams.find(filter_doc, {"__v": 0}).sort("createdAt", DESCENDING)
        return [_exam_from_doc(doc) for doc in cursor]

    def count_exams(self, filter_doc: Dict[str, Any]) -> int:
        return self.exams.count_documents(filter_doc)

    # Results ---------------------------------------------------------------
    def find_results(self, filter_doc: Dict[str, Any]) -> List[Result]:
        cursor = self.results.find(filter_doc, {"__v": 0}).sort("createdAt", DESCENDING)
        return [_result_from_doc(doc) for doc in cursor]

    def count_results(self, filter_doc: Dict[str, Any]) -> int:
        return self.results.count_documents(filter_doc)

    def delete_result(self, result_id: str) -> Optional[Result]:
        oid = _to_object_id(result_id)
        if oid is None:
            return None
        doc = self.results.find_one_and_delete({"_id": oid})
        return _result_from_doc(doc) if doc else None

    # Integrations ----------------------------------------------------------
    def list_integrations(self) -> List[Integration]:
        cursor = self.integrations.find({}, {"__v": 0}).sort("createdAt", DESCENDING)
        return [_integration_from_doc(doc) for doc in cursor]

    def create_integration(self, name: str) -> Integration:
        now = datetime.now(timezone.utc)
        doc = {
            "integrationId": str(uuid.uuid4()),
            "integrationName": name,
            "createdAt": now,
            "updatedAt": now,
        }
        inserted = self.integrations.insert_one(doc)
        doc["_id"] = inserted.inserted_id
        return _integration_from_doc(doc)

    def delete_integration(self, object_id: str) -> Optional[Integration]:
        oid = _to_object_id(object_id)
        if oid is None:
            return None
        doc = self.integrations.find_one_and_delete({"_id": oid})
        return _integration_from_doc(doc) if doc else None

    def integration_exists(self, integration_id: str) -> bool:
        return self.integrations.count_documents({"integrationId": integration_id}, limit=1) > 0

    # Chart data ------------------------------------------------------------
    def daily_counts(self, collection: str, start: datetime, end: datetime, count_questions: bool = False) -> Dict[str, int]:
        """Group documents created in [start, end] by UTC day.

        With ``count_questions`` the size of each document's ``questions``
        array is summed instead of counting documents.
        """
        amount: Any = {"$size": {"$ifNull": ["$questions", []]}} if count_questions else 1
        pipeline = [
            {"$match": {"createdAt": {"$gte": start, "$lte": end}}},
            {
                "$group": {
                    "_id": {"$dateToString": {"format": "%Y-%m-%d", "date": "$createdAt"}},
                    "count": {"$sum": amount},
                }
            },
            {"$sort": {"_id": 1}},
        ]
        return {row["_id"]: int(row.get("count", 0)) for row in self.db[collection].aggregate(pipeline)}
