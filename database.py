"""
MongoDB access.

One client per process, created lazily by MongoClient on first use. Each
entity lives in its own collection; the repositories build on the helpers
below and pass an explicit database/session when they have one.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import settings

logger = logging.getLogger(__name__)

client = MongoClient(settings.database_url)
db: Database = client[settings.database_name]


def create_document(
    collection_name: str,
    data: Union[BaseModel, dict],
    session=None,
    database: Optional[Database] = None,
) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id as a string."""
    database = database if database is not None else db
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict.setdefault("created_at", now)
    data_dict.setdefault("updated_at", now)
    result = database[collection_name].insert_one(data_dict, session=session)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    skip: int = 0,
    sort: Optional[List[tuple]] = None,
    session=None,
    database: Optional[Database] = None,
) -> List[dict]:
    database = database if database is not None else db
    cursor = database[collection_name].find(filter_dict or {}, session=session)
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


@contextmanager
def transaction(database: Optional[Database] = None, enabled: Optional[bool] = None):
    """Yield a session bound to a multi-document transaction, or None when disabled.

    Transactions need a replica set; on a standalone server leave
    MONGO_TRANSACTIONS off and writes run one after another.
    """
    database = database if database is not None else db
    enabled = settings.mongo_transactions if enabled is None else enabled
    if not enabled:
        yield None
        return
    with database.client.start_session() as session:
        with session.start_transaction():
            yield session


def ensure_indexes(database: Optional[Database] = None) -> None:
    database = database if database is not None else db
    database["libraryuser"].create_index([("email", ASCENDING)], unique=True)
    database["book"].create_index([("title", ASCENDING), ("language", ASCENDING), ("type", ASCENDING)])
    database["book"].create_index([("status", ASCENDING)])
    database["bookloan"].create_index([("user_id", ASCENDING), ("status", ASCENDING)])
    database["bookloan"].create_index([("book_id", ASCENDING), ("status", ASCENDING)])
    database["bookloan"].create_index([("status", ASCENDING), ("due_date", ASCENDING)])
    logger.info("Indexes ensured on %s", database.name)
