from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from bson import ObjectId
from pymongo import ReturnDocument

from database import MongoRepository, _parse_datetime, _user_from_doc, _exam_from_doc, _result_from_doc


@pytest.fixture
def mongo():
    with patch("database.MongoClient") as client_cls:
        repo = MongoRepository("mongodb://test", "lucida")
        for name in ("users", "exams", "results", "integrations"):
            setattr(repo, name, MagicMock(name=name))
        repo.db = MagicMock(name="db")
        yield repo, client_cls


def test_client_is_timezone_aware(mongo):
    _, client_cls = mongo
    client_cls.assert_called_once_with("mongodb://test", tz_aware=True)


def test_parse_datetime_variants():
    expected = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert _parse_datetime(datetime(2024, 1, 2, 3, 4, 5)) == expected
    assert _parse_datetime("2024-01-02T03:04:05Z") == expected
    assert _parse_datetime({"$date": "2024-01-02T03:04:05Z"}) == expected
    assert _parse_datetime(expected.timestamp() * 1000) == expected
    assert _parse_datetime("garbage") is None
    assert _parse_datetime(None) is None


def test_user_from_doc():
    user = _user_from_doc({
        "_id": ObjectId("665d1f0c2a1b3c4d5e6f7a8b"),
        "id": "ana@example.com",
        "subscription": {"plan": "annual", "status": "active"},
        "usage": {"examsThisPeriod": "4"},
        "createdAt": datetime(2024, 1, 1),
    })
    assert user.object_id == "665d1f0c2a1b3c4d5e6f7a8b"
    assert user.subscription.plan == "annual"
    assert user.usage.exams_this_period == 4
    assert user.created_at.tzinfo is timezone.utc
    assert user.display_name == "ana"


def test_user_without_usage_keeps_none():
    assert _user_from_doc({"id": "x"}).usage.exams_this_period is None


def test_exam_and_result_from_doc():
    exam = _exam_from_doc({
        "_id": ObjectId("665d1f0c2a1b3c4d5e6f7a01"),
        "title": "Química",
        "questions": [{"question": "H2O?", "options": ["a"], "correctAnswer": 0}],
        "questionCount": None,
    })
    assert exam.id == "665d1f0c2a1b3c4d5e6f7a01"
    assert exam.question_count == 0
    assert exam.questions[0].correct_answer == 0

    result = _result_from_doc({"_id": "r1", "examId": "e1", "score": "7", "percentage": 0.7})
    assert result.score == 7.0
    assert result.percent == 70.0


def test_find_users_sorts_and_paginates(mongo):
    repo, _ = mongo
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.skip.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.__iter__.return_value = iter([{"id": "ana@example.com"}])
    repo.users.find.return_value = cursor

    users = repo.find_users({"id": "x"}, skip=20, limit=10)

    repo.users.find.assert_called_once_with({"id": "x"}, {"__v": 0})
    cursor.sort.assert_called_once_with("createdAt", -1)
    cursor.skip.assert_called_once_with(20)
    cursor.limit.assert_called_once_with(10)
    assert [user.id for user in users] == ["ana@example.com"]


def test_plan_counts_ignores_missing_plan(mongo):
    repo, _ = mongo
    repo.users.aggregate.return_value = [{"_id": "trial", "count": 3}, {"_id": None, "count": 9}]
    assert repo.plan_counts({}) == {"trial": 3}
    pipeline = repo.users.aggregate.call_args[0][0]
    assert pipeline[1]["$group"]["_id"] == "$subscription.plan"


def test_update_user_sets_updated_at(mongo):
    repo, _ = mongo
    repo.users.find_one_and_update.return_value = {"id": "ana@example.com", "subscription": {"plan": "annual"}}

    user = repo.update_user("ana@example.com", {"subscription.plan": "annual"})

    args, kwargs = repo.users.find_one_and_update.call_args
    assert args[0] == {"id": "ana@example.com"}
    changes = args[1]["$set"]
    assert changes["subscription.plan"] == "annual"
    assert isinstance(changes["updatedAt"], datetime)
    assert kwargs["return_document"] is ReturnDocument.AFTER
    assert user.subscription.plan == "annual"


def test_update_unknown_user(mongo):
    repo, _ = mongo
    repo.users.find_one_and_update.return_value = None
    assert repo.update_user("ghost", {"integrationId": None}) is None


def test_delete_with_malformed_id_skips_query(mongo):
    repo, _ = mongo
    assert repo.delete_result("not-an-object-id") is None
    assert repo.delete_integration("zzz") is None
    repo.results.find_one_and_delete.assert_not_called()
    repo.integrations.find_one_and_delete.assert_not_called()


def test_delete_integration_by_object_id(mongo):
    repo, _ = mongo
    oid = ObjectId("665d1f0c2a1b3c4d5e6f7c01")
    repo.integrations.find_one_and_delete.return_value = {"_id": oid, "integrationId": "abc", "integrationName": "Alfa"}
    deleted = repo.delete_integration(str(oid))
    repo.integrations.find_one_and_delete.assert_called_once_with({"_id": oid})
    assert deleted.integration_name == "Alfa"


def test_create_integration_generates_uuid(mongo):
    repo, _ = mongo
    repo.integrations.insert_one.return_value = MagicMock(inserted_id=ObjectId("665d1f0c2a1b3c4d5e6f7c02"))

    created = repo.create_integration("Escola Beta")

    doc = repo.integrations.insert_one.call_args[0][0]
    assert len(doc["integrationId"]) == 36
    assert created.integration_id == doc["integrationId"]
    assert created.id == "665d1f0c2a1b3c4d5e6f7c02"


def test_integration_exists(mongo):
    repo, _ = mongo
    repo.integrations.count_documents.return_value = 1
    assert repo.integration_exists("abc") is True
    repo.integrations.count_documents.assert_called_once_with({"integrationId": "abc"}, limit=1)


def test_daily_counts_pipeline(mongo):
    repo, _ = mongo
    collection = MagicMock()
    collection.aggregate.return_value = [{"_id": "2024-03-01", "count": 4}]
    repo.db.__getitem__.return_value = collection
    start = datetime(2024, 3, 1, tzinfo=timezone.utc)
    end = datetime(2024, 3, 2, tzinfo=timezone.utc)

    counts = repo.daily_counts("exams", start, end, count_questions=True)

    repo.db.__getitem__.assert_called_once_with("exams")
    pipeline = collection.aggregate.call_args[0][0]
    assert pipeline[0] == {"$match": {"createdAt": {"$gte": start, "$lte": end}}}
    assert pipeline[1]["$group"]["count"] == {"$sum": {"$size": {"$ifNull": ["$questions", []]}}}
    assert counts == {"2024-03-01": 4}


def test_ensure_indexes(mongo):
    repo, _ = mongo
    repo.ensure_indexes()
    repo.integrations.create_index.assert_called_once_with("integrationId", unique=True)
