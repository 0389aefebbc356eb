"""
Mongo-backed repositories for users, books and loans.

Documents store ids as ObjectId and calendar dates as ISO strings
("YYYY-MM-DD"), which sort and compare correctly as plain strings.
Books, users and loans carry a ``version`` counter: saving an existing
entity only succeeds if nobody else saved it since it was loaded.
"""
import re
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, get_documents
from domain import (
    Book,
    BookLanguage,
    BookLoan,
    BookQuantity,
    BookStatus,
    BookTitle,
    BookType,
    LoanPeriod,
    LoanQuantity,
    LoanStatus,
    Role,
    TimeProvider,
    User,
    UserStatus,
)
from errors import ConcurrencyConflictError, NotFoundError


def _oid(value: Optional[str]) -> Optional[ObjectId]:
    if value is None or not ObjectId.is_valid(str(value)):
        return None
    return ObjectId(str(value))


def _iso(day: Optional[date]) -> Optional[str]:
    return day.isoformat() if day is not None else None


def _parse_day(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


class MongoRepository:
    """Shared insert / compare-and-set update for versioned entities."""

    collection_name = ""

    def __init__(self, db: Database, time_provider: Optional[TimeProvider] = None):
        self.db = db
        self.time = time_provider or TimeProvider()

    @property
    def collection(self):
        return self.db[self.collection_name]

    def _to_document(self, entity) -> dict:
        raise NotImplementedError

    def _save(self, entity, session=None):
        now = self.time.current_datetime()
        doc = self._to_document(entity)
        if entity.id is None:
            doc.update(version=0, created_at=now, updated_at=now)
            entity.id = create_document(self.collection_name, doc, session=session, database=self.db)
            entity.version = 0
            entity.created_at = now
            if hasattr(entity, "updated_at"):
                entity.updated_at = now
            return entity

        doc.update(version=entity.version + 1, updated_at=now)
        result = self.collection.update_one(
            {"_id": ObjectId(entity.id), "version": entity.version},
            {"$set": doc},
            session=session,
        )
        if result.matched_count == 0:
            if self.collection.count_documents({"_id": ObjectId(entity.id)}, session=session) == 0:
                raise NotFoundError(f"{self.collection_name} {entity.id} no longer exists")
            raise ConcurrencyConflictError(
                f"{self.collection_name} {entity.id} was modified concurrently (version {entity.version})"
            )
        entity.version += 1
        if hasattr(entity, "updated_at"):
            entity.updated_at = now
        return entity

    def _find_one(self, query: dict, session=None) -> Optional[dict]:
        return self.collection.find_one(query, session=session)

    def count(self, query: Optional[dict] = None, session=None) -> int:
        return self.collection.count_documents(query or {}, session=session)


class UserRepository(MongoRepository):
    collection_name = "libraryuser"

    def _to_document(self, user: User) -> dict:
        return {
            "name": user.name,
            "email": user.email,
            "password_hash": user.password_hash,
            "role": user.role.value,
            "status": user.status.value,
            "last_login_at": user.last_login_at,
        }

    def _from_document(self, doc: dict) -> User:
        return User(
            id=str(doc["_id"]),
            name=doc["name"],
            email=doc["email"],
            password_hash=doc.get("password_hash", ""),
            role=Role.parse(doc.get("role", Role.USER.value)),
            status=UserStatus.parse(doc.get("status", UserStatus.ACTIVE.value)),
            last_login_at=doc.get("last_login_at"),
            created_at=doc.get("created_at"),
            version=doc.get("version", 0),
        )

    def save(self, user: User, session=None) -> User:
        return self._save(user, session)

    def find_by_id(self, user_id: str, session=None) -> Optional[User]:
        oid = _oid(user_id)
        if oid is None:
            return None
        doc = self._find_one({"_id": oid}, session)
        return self._from_document(doc) if doc else None

    def find_by_id_in(self, user_ids: Iterable[str], session=None) -> List[User]:
        oids = [oid for oid in (_oid(u) for u in user_ids) if oid is not None]
        docs = get_documents(self.collection_name, {"_id": {"$in": oids}}, session=session, database=self.db)
        return [self._from_document(d) for d in docs]

    def find_by_email(self, email: str, session=None) -> Optional[User]:
        doc = self._find_one({"email": email.strip().lower()}, session)
        return self._from_document(doc) if doc else None

    def find_all(self, page: int = 0, size: int = 20) -> Tuple[List[User], int]:
        docs = get_documents(
            self.collection_name,
            limit=size,
            skip=page * size,
            sort=[("created_at", DESCENDING)],
            database=self.db,
        )
        return [self._from_document(d) for d in docs], self.count()


class BookRepository(MongoRepository):
    collection_name = "book"

    def _to_document(self, book: Book) -> dict:
        return {
            "title": book.title.value,
            "language": book.language.value,
            "type": book.type.value,
            "quantity": book.quantity.value,
            "status": book.status.value,
            "registered_by": book.registered_by,
        }

    def _from_document(self, doc: dict) -> Book:
        return Book(
            id=str(doc["_id"]),
            title=BookTitle.of(doc["title"]),
            language=BookLanguage.parse(doc["language"]),
            type=BookType.parse(doc["type"]),
            quantity=BookQuantity.of(doc["quantity"]),
            status=BookStatus.parse(doc["status"]),
            registered_by=doc.get("registered_by"),
            version=doc.get("version", 0),
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
        )

    def save(self, book: Book, session=None) -> Book:
        return self._save(book, session)

    def find_by_id(self, book_id: str, session=None) -> Optional[Book]:
        oid = _oid(book_id)
        if oid is None:
            return None
        doc = self._find_one({"_id": oid}, session)
        return self._from_document(doc) if doc else None

    def find_by_id_in(self, book_ids: Iterable[str], session=None) -> List[Book]:
        oids = [oid for oid in (_oid(b) for b in book_ids) if oid is not None]
        docs = get_documents(self.collection_name, {"_id": {"$in": oids}}, session=session, database=self.db)
        return [self._from_document(d) for d in docs]

    def find_same_book(
        self,
        title: BookTitle,
        language: BookLanguage,
        type: BookType,
        exclude_id: Optional[str] = None,
        session=None,
    ) -> Optional[Book]:
        query = {"title": title.value, "language": language.value, "type": type.value}
        if exclude_id is not None:
            query["_id"] = {"$ne": _oid(exclude_id)}
        doc = self._find_one(query, session)
        return self._from_document(doc) if doc else None

    def search(
        self,
        keyword: Optional[str] = None,
        type: Optional[BookType] = None,
        language: Optional[BookLanguage] = None,
        status: Optional[BookStatus] = None,
        page: int = 0,
        size: int = 20,
    ) -> Tuple[List[Book], int]:
        query = {}
        if keyword:
            query["title"] = {"$regex": re.escape(keyword.strip()), "$options": "i"}
        if type is not None:
            query["type"] = type.value
        if language is not None:
            query["language"] = language.value
        if status is not None:
            query["status"] = status.value
        docs = get_documents(
            self.collection_name,
            query,
            limit=size,
            skip=page * size,
            sort=[("title", 1)],
            database=self.db,
        )
        return [self._from_document(d) for d in docs], self.count(query)

    def find_by_status(self, status: BookStatus) -> List[Book]:
        docs = get_documents(self.collection_name, {"status": status.value}, sort=[("title", 1)], database=self.db)
        return [self._from_document(d) for d in docs]

    def find_by_registered_by(self, user_id: str) -> List[Book]:
        docs = get_documents(
            self.collection_name,
            {"registered_by": user_id},
            sort=[("created_at", DESCENDING)],
            database=self.db,
        )
        return [self._from_document(d) for d in docs]

    def delete_by_id(self, book_id: str, session=None) -> bool:
        oid = _oid(book_id)
        if oid is None:
            return False
        return self.collection.delete_one({"_id": oid}, session=session).deleted_count == 1

    def count_by_field(self, field: str) -> Dict[str, int]:
        pipeline = [{"$group": {"_id": f"${field}", "count": {"$sum": 1}}}]
        return {row["_id"]: row["count"] for row in self.collection.aggregate(pipeline)}

    def total_quantity(self) -> int:
        pipeline = [{"$group": {"_id": None, "total": {"$sum": "$quantity"}}}]
        rows = list(self.collection.aggregate(pipeline))
        return rows[0]["total"] if rows else 0


class BookLoanRepository(MongoRepository):
    """Loans reference their book and user by id and are hydrated through those repositories."""

    collection_name = "bookloan"

    def __init__(
        self,
        db: Database,
        books: BookRepository,
        users: UserRepository,
        time_provider: Optional[TimeProvider] = None,
    ):
        super().__init__(db, time_provider)
        self.books = books
        self.users = users

    def _to_document(self, loan: BookLoan) -> dict:
        return {
            "book_id": loan.book.id,
            "user_id": loan.user.id,
            "quantity": loan.quantity.value,
            "loan_date": _iso(loan.loan_period.loan_date),
            "due_date": _iso(loan.loan_period.due_date),
            "status": loan.status.value,
            "extension_count": loan.extension_count,
            "returned_on": _iso(loan.returned_on),
            "returned_late": loan.was_returned_late(),
            "executed": loan.executed,
        }

    def _from_document(self, doc: dict, book: Book, user: User) -> BookLoan:
        return BookLoan(
            id=str(doc["_id"]),
            book=book,
            user=user,
            quantity=LoanQuantity.of(doc["quantity"]),
            loan_period=LoanPeriod.of(_parse_day(doc["loan_date"]), _parse_day(doc["due_date"])),
            status=LoanStatus.parse(doc["status"]),
            extension_count=doc.get("extension_count", 0),
            returned_on=_parse_day(doc.get("returned_on")),
            executed=doc.get("executed", True),
            version=doc.get("version", 0),
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
        )

    def _hydrate(self, docs: List[dict], session=None) -> List[BookLoan]:
        # one Book instance per id, so loans sharing a book mutate the same object
        books = {b.id: b for b in self.books.find_by_id_in({d["book_id"] for d in docs}, session)}
        users = {u.id: u for u in self.users.find_by_id_in({d["user_id"] for d in docs}, session)}
        loans = []
        for doc in docs:
            book = books.get(doc["book_id"])
            user = users.get(doc["user_id"])
            if book is None or user is None:
                raise NotFoundError(f"Loan {doc['_id']} references a missing book or user")
            loans.append(self._from_document(doc, book, user))
        return loans

    def _find(self, query: dict, sort=None, limit=None, skip=0, session=None) -> List[BookLoan]:
        docs = get_documents(
            self.collection_name,
            query,
            limit=limit,
            skip=skip,
            sort=sort or [("loan_date", DESCENDING), ("created_at", DESCENDING)],
            session=session,
            database=self.db,
        )
        return self._hydrate(docs, session)

    def save(self, loan: BookLoan, session=None) -> BookLoan:
        return self._save(loan, session)

    def find_by_id(self, loan_id: str, session=None) -> Optional[BookLoan]:
        oid = _oid(loan_id)
        if oid is None:
            return None
        loans = self._find({"_id": oid}, session=session)
        return loans[0] if loans else None

    def find_by_id_in(self, loan_ids: Iterable[str], session=None) -> List[BookLoan]:
        oids = [oid for oid in (_oid(i) for i in loan_ids) if oid is not None]
        return self._find({"_id": {"$in": oids}}, session=session)

    def find_by_id_and_status(self, loan_id: str, status: LoanStatus, session=None) -> Optional[BookLoan]:
        oid = _oid(loan_id)
        if oid is None:
            return None
        loans = self._find({"_id": oid, "status": status.value}, session=session)
        return loans[0] if loans else None

    def find_by_user_id(self, user_id: str) -> List[BookLoan]:
        return self._find({"user_id": user_id})

    def find_by_user_id_and_status(self, user_id: str, status: LoanStatus) -> List[BookLoan]:
        return self._find({"user_id": user_id, "status": status.value})

    def find_active_loans(self) -> List[BookLoan]:
        return self._find({"status": LoanStatus.ACTIVE.value}, sort=[("due_date", 1)])

    def find_overdue_loans(self, as_of: date) -> List[BookLoan]:
        return self._find(
            {"status": LoanStatus.ACTIVE.value, "due_date": {"$lt": _iso(as_of)}},
            sort=[("due_date", 1)],
        )

    def find_upcoming_due_loans(self, start: date, end: date) -> List[BookLoan]:
        return self._find(
            {"status": LoanStatus.ACTIVE.value, "due_date": {"$gte": _iso(start), "$lte": _iso(end)}},
            sort=[("due_date", 1)],
        )

    def find_loans_between_dates(self, start: date, end: date) -> List[BookLoan]:
        return self._find({"loan_date": {"$gte": _iso(start), "$lte": _iso(end)}})

    def find_returned_between(self, start: date, end: date, user_id: Optional[str] = None) -> List[BookLoan]:
        query = {
            "status": LoanStatus.RETURNED.value,
            "returned_on": {"$gte": _iso(start), "$lte": _iso(end)},
        }
        if user_id is not None:
            query["user_id"] = user_id
        return self._find(query, sort=[("returned_on", DESCENDING)])

    def find_all(
        self,
        page: int = 0,
        size: int = 20,
        status: Optional[LoanStatus] = None,
        user_id: Optional[str] = None,
    ) -> Tuple[List[BookLoan], int]:
        query = {}
        if status is not None:
            query["status"] = status.value
        if user_id is not None:
            query["user_id"] = user_id
        return self._find(query, limit=size, skip=page * size), self.count(query)

    def count_active_by_user_id(self, user_id: str, session=None) -> int:
        return self.count({"user_id": user_id, "status": LoanStatus.ACTIVE.value}, session)

    def count_active_by_book_id(self, book_id: str, session=None) -> int:
        return self.count({"book_id": book_id, "status": LoanStatus.ACTIVE.value}, session)

    def count_by_book_id(self, book_id: str, session=None) -> int:
        return self.count({"book_id": book_id}, session)

    def count_loans_created_on(self, user_id: str, day: date, session=None) -> int:
        return self.count({"user_id": user_id, "loan_date": _iso(day)}, session)

    def count_overdue_by_user_id(self, user_id: str, as_of: date, session=None) -> int:
        return self.count(
            {"user_id": user_id, "status": LoanStatus.ACTIVE.value, "due_date": {"$lt": _iso(as_of)}},
            session,
        )

    def count_overdue_returns_since(self, user_id: str, since: date, session=None) -> int:
        return self.count(
            {
                "user_id": user_id,
                "status": LoanStatus.RETURNED.value,
                "returned_late": True,
                "returned_on": {"$gte": _iso(since)},
            },
            session,
        )
