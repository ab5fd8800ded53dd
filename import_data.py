"""Utility script to seed MongoDB with JSON-lines dumps of the Lucida collections."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from bson import json_util
from pymongo import MongoClient

COLLECTIONS = ("users", "exams", "results", "integrations")


def import_collection(client: MongoClient, database: str, collection: str, file_path: Path) -> int:
    col = client[database][collection]

    upserts = 0
    with file_path.open("r", encoding="utf-8") as fh:
        for number, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                # Extended JSON keeps {"$oid": ...} and {"$date": ...} typed.
                doc = json_util.loads(line)
            except ValueError:
                logging.warning("%s:%d is not valid JSON, skipping", file_path, number)
                continue
            _id = doc.get("_id")
            if _id is None:
                continue
            col.replace_one({"_id": _id}, doc, upsert=True)
            upserts += 1
    return upserts


def main() -> None:
    parser = argparse.ArgumentParser(description="Import Lucida JSON-lines dumps")
    parser.add_argument("--connection-string", default=os.environ.get("MONGODB_URI", "mongodb://localhost:27017/"))
    parser.add_argument("--database", default=os.environ.get("MONGODB_DATABASE", "lucida"))
    parser.add_argument("--data-dir", default="data")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    client = MongoClient(args.connection_string)
    data_dir = Path(args.data_dir)

    for name in COLLECTIONS:
        path = data_dir / f"{name}.jsonl"
        if not path.exists():
            logging.info("Skipping %s: file not found at %s", name, path)
            continue
        count = import_collection(client, args.database, name, path)
        logging.info("Imported %d documents into %s", count, name)


if __name__ == "__main__":
    main()
