"""
Database access for the Driver Booking service

MongoDB is the hosted store behind every table. Rows are plain dicts keyed by a
string UUID `id`; the Mongo `_id` never leaves this module.

- TableStore    -> select / select_one / insert / update
- ObjectStorage -> GridFS buckets for uploaded documents
"""
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import gridfs
from gridfs.errors import NoFile
from pymongo import MongoClient, ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "driver_booking")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")

db = None
if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: datetime) -> str:
    # Fixed-width timestamps keep string ordering equal to time ordering
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class StoreError(Exception):
    """A tabular store or object storage call failed."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class TableStore:
    """Row access scoped by equality filters on an owning key."""

    def __init__(self, database):
        self._db = database

    @property
    def available(self) -> bool:
        return self._db is not None

    def _table(self, table: str):
        if self._db is None:
            raise StoreError("Database not configured", code="unavailable")
        return self._db[table]

    def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[dict]:
        collection = self._table(table)
        try:
            cursor = collection.find(filters or {}, {"_id": 0})
            if order_by:
                cursor = cursor.sort(order_by, DESCENDING if descending else ASCENDING)
            return list(cursor)
        except PyMongoError as e:
            raise StoreError(f"select on {table} failed: {e}") from e

    def select_one(self, table: str, filters: Dict[str, Any]) -> Optional[dict]:
        """Return the single matching row, None when there is none."""
        collection = self._table(table)
        try:
            rows = list(collection.find(filters, {"_id": 0}).limit(2))
        except PyMongoError as e:
            raise StoreError(f"select on {table} failed: {e}") from e
        if len(rows) > 1:
            raise StoreError(f"multiple rows in {table} match {sorted(filters)}", code="multiple_rows")
        return rows[0] if rows else None

    def insert(self, table: str, rows: List[dict]) -> List[dict]:
        collection = self._table(table)
        docs = []
        for row in rows:
            doc = dict(row)
            doc.setdefault("id", str(uuid.uuid4()))
            docs.append(doc)
        try:
            # insert_many adds `_id` to the dicts it is given
            collection.insert_many([dict(d) for d in docs])
        except PyMongoError as e:
            raise StoreError(f"insert into {table} failed: {e}") from e
        return docs

    def update(self, table: str, patch: Dict[str, Any], filters: Dict[str, Any]) -> int:
        if not filters:
            raise StoreError("update requires a filter", code="unfiltered_update")
        collection = self._table(table)
        try:
            res = collection.update_many(filters, {"$set": patch})
        except PyMongoError as e:
            raise StoreError(f"update on {table} failed: {e}") from e
        return res.matched_count


class ObjectStorage:
    """Public object buckets kept in GridFS."""

    def __init__(self, database, public_base_url: str = PUBLIC_BASE_URL):
        self._db = database
        self.public_base_url = public_base_url.rstrip("/")

    def _bucket(self, bucket: str) -> gridfs.GridFSBucket:
        if self._db is None:
            raise StoreError("Database not configured", code="unavailable")
        return gridfs.GridFSBucket(self._db, bucket_name=bucket)

    def upload(self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        fs = self._bucket(bucket)
        try:
            existing = next(iter(fs.find({"filename": path}).limit(1)), None)
        except PyMongoError as e:
            raise StoreError(f"upload to {bucket} failed: {e}") from e
        if existing is not None:
            raise StoreError(f"{bucket}/{path} already exists", code="duplicate")
        try:
            fs.upload_from_stream(path, data, metadata={"contentType": content_type or "application/octet-stream"})
        except PyMongoError as e:
            raise StoreError(f"upload to {bucket} failed: {e}") from e
        return path

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_base_url}/storage/{bucket}/{path}"

    def download(self, bucket: str, path: str) -> Optional[Tuple[bytes, str]]:
        fs = self._bucket(bucket)
        try:
            stream = fs.open_download_stream_by_name(path)
        except NoFile:
            return None
        except PyMongoError as e:
            raise StoreError(f"download from {bucket} failed: {e}") from e
        metadata = stream.metadata or {}
        return stream.read(), metadata.get("contentType", "application/octet-stream")
