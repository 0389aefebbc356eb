"""
Application services: the use cases the HTTP layer calls.

Every write that touches a Book and a BookLoan together runs through
UnitOfWork.run, which opens a database transaction and retries the whole
operation when an optimistic-concurrency conflict is detected. Entities are
always re-read inside the retried function.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import LoanPolicyConfig, Settings, settings as default_settings
from database import transaction
from domain import (
    Book,
    BookLanguage,
    BookLoan,
    BookStatus,
    BookTitle,
    BookType,
    LoanQuantity,
    LoanStatus,
    Role,
    TimeProvider,
    User,
)
from errors import (
    AuthenticationError,
    ConcurrencyConflictError,
    DuplicateError,
    InvalidArgumentError,
    InvalidStateError,
    LibraryError,
    NotFoundError,
)
from policy import LoanPolicy
from repositories import BookLoanRepository, BookRepository, UserRepository
from security import hash_password, verify_password

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Page:
    items: list
    total: int
    page: int
    size: int


class UnitOfWork:
    def __init__(self, db: Database, transactions: bool = False, retries: int = 3):
        self.db = db
        self.transactions = transactions
        self.retries = retries

    def run(self, operation: Callable[..., T], label: str) -> T:
        attempt = 0
        while True:
            try:
                with transaction(self.db, self.transactions) as session:
                    return operation(session)
            except ConcurrencyConflictError:
                attempt += 1
                if not self._may_retry(attempt, label, "concurrent modification"):
                    raise
            except PyMongoError as exc:
                # WriteConflict inside a transaction
                if not exc.has_error_label("TransientTransactionError"):
                    raise
                attempt += 1
                if not self._may_retry(attempt, label, "transient transaction error"):
                    raise

    def _may_retry(self, attempt: int, label: str, reason: str) -> bool:
        if attempt > self.retries:
            logger.warning("%s: still failing after %d retries (%s), giving up", label, self.retries, reason)
            return False
        logger.warning("%s: %s, retrying (%d/%d)", label, reason, attempt, self.retries)
        return True


def _page_args(page: int, size: int) -> None:
    if page < 0:
        raise InvalidArgumentError("Page must be zero or positive")
    if size < 1 or size > 100:
        raise InvalidArgumentError("Page size must be between 1 and 100")


# =========================
# users
# =========================

class UserService:
    def __init__(self, users: UserRepository, time_provider: TimeProvider) -> None:
        self.users = users
        self.time = time_provider

    def register(self, name: str, email: str, password: str, role: Role = Role.USER) -> User:
        if not password or len(password) < 4:
            raise InvalidArgumentError("Password must be at least 4 characters")
        if self.users.find_by_email(email or ""):
            raise DuplicateError("Email already registered", "EMAIL_TAKEN")
        user = User.create(name, email, hash_password(password), role)
        self.users.save(user)
        logger.info("Registered %s %s (%s)", user.role.value.lower(), user.email, user.id)
        return user

    def authenticate(self, email: str, password: str) -> User:
        user = self.users.find_by_email(email or "")
        if not user or not verify_password(password, user.password_hash):
            logger.warning("Failed login for %s", email)
            raise AuthenticationError("Invalid credentials")
        if not user.is_active():
            raise AuthenticationError(f"Account is {user.status.value.lower()}", "ACCOUNT_INACTIVE")
        user.record_login(self.time)
        self.users.save(user)
        return user

    def get(self, user_id: str) -> User:
        user = self.users.find_by_id(user_id)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def list(self, page: int = 0, size: int = 20) -> Page:
        _page_args(page, size)
        items, total = self.users.find_all(page, size)
        return Page(items, total, page, size)

    def activate(self, user_id: str) -> User:
        user = self.get(user_id)
        user.activate()
        self.users.save(user)
        logger.info("Activated user %s", user_id)
        return user

    def deactivate(self, user_id: str) -> User:
        user = self.get(user_id)
        user.deactivate()
        self.users.save(user)
        logger.info("Deactivated user %s", user_id)
        return user

    def change_role(self, user_id: str, role) -> User:
        user = self.get(user_id)
        user.change_role(role)
        self.users.save(user)
        logger.info("User %s is now %s", user_id, user.role.value)
        return user

    def ensure_default_admin(self, email: str, password: str) -> Optional[User]:
        """Create the bootstrap admin account once; no-op when unset or already present."""
        if not email or not password:
            return None
        existing = self.users.find_by_email(email)
        if existing:
            return existing
        return self.register("Administrator", email, password, Role.ADMIN)


# =========================
# catalog
# =========================

class BookService:
    def __init__(
        self,
        books: BookRepository,
        loans: BookLoanRepository,
        unit_of_work: UnitOfWork,
    ) -> None:
        self.books = books
        self.loans = loans
        self.uow = unit_of_work

    def register(self, title, language, type, quantity, registered_by: User) -> Book:
        """Add a book to the catalog, or restock the existing copy of the same book."""
        def op(session):
            # fresh candidate per attempt, an aborted insert may have set the id
            candidate = Book.create(title, language, type, quantity, registered_by)
            existing = self.books.find_same_book(candidate.title, candidate.language, candidate.type, session=session)
            if existing is None:
                self.books.save(candidate, session)
                logger.info("Registered book '%s' (%s) x%s", candidate.title, candidate.id, candidate.quantity)
                return candidate
            existing.add_stock(candidate.quantity.value)
            self.books.save(existing, session)
            logger.info(
                "Book '%s' already registered (%s), stock +%s -> %s",
                existing.title, existing.id, candidate.quantity, existing.quantity,
            )
            return existing

        return self.uow.run(op, "register book")

    def get(self, book_id: str, session=None) -> Book:
        book = self.books.find_by_id(book_id, session)
        if not book:
            raise NotFoundError(f"Book {book_id} not found")
        return book

    def update(self, book_id: str, title=None, language=None, type=None, quantity=None) -> Book:
        new_title = BookTitle.of(title) if title is not None else None
        new_language = BookLanguage.parse(language) if language is not None else None
        new_type = BookType.parse(type) if type is not None else None

        def op(session):
            book = self.get(book_id, session)
            identity = (new_title or book.title, new_language or book.language, new_type or book.type)
            clash = None
            if not book.is_same_book(*identity):
                clash = self.books.find_same_book(*identity, exclude_id=book.id, session=session)
            if clash:
                raise DuplicateError(f"Another book with the same title, language and type exists ({clash.id})")
            book.update_info(new_title, new_language, new_type, quantity)
            self.books.save(book, session)
            logger.info("Updated book %s", book.id)
            return book

        return self.uow.run(op, "update book")

    def delete(self, book_id: str) -> None:
        def op(session):
            book = self.get(book_id, session)
            active = self.loans.count_active_by_book_id(book.id, session)
            if active:
                raise InvalidStateError(f"Book '{book.title}' has {active} active loan(s) and cannot be deleted")
            # loan history keeps pointing at the book; retire it with a status instead
            history = self.loans.count_by_book_id(book.id, session)
            if history:
                raise InvalidStateError(
                    f"Book '{book.title}' has loan history and cannot be deleted; change its status instead"
                )
            self.books.delete_by_id(book.id, session)
            logger.info("Deleted book '%s' (%s)", book.title, book.id)

        self.uow.run(op, "delete book")

    def change_status(self, book_id: str, status) -> Book:
        new_status = BookStatus.parse(status)

        def op(session):
            book = self.get(book_id, session)
            old = book.status
            book.change_status(new_status)
            self.books.save(book, session)
            logger.info("Book %s status %s -> %s", book.id, old.value, new_status.value)
            return book

        return self.uow.run(op, "change book status")

    def add_stock(self, book_id: str, amount: int) -> Book:
        def op(session):
            book = self.get(book_id, session)
            book.add_stock(amount)
            self.books.save(book, session)
            logger.info("Book %s stock +%d -> %s", book.id, amount, book.quantity)
            return book

        return self.uow.run(op, "add stock")

    def search(self, keyword=None, type=None, language=None, status=None, page: int = 0, size: int = 20) -> Page:
        _page_args(page, size)
        items, total = self.books.search(
            keyword,
            BookType.parse(type) if type else None,
            BookLanguage.parse(language) if language else None,
            BookStatus.parse(status) if status else None,
            page,
            size,
        )
        return Page(items, total, page, size)

    def available_books(self) -> List[Book]:
        return [b for b in self.books.find_by_status(BookStatus.AVAILABLE) if b.is_available()]

    def borrowed_books(self) -> List[Book]:
        return self.books.find_by_status(BookStatus.BORROWED)

    def books_registered_by(self, user_id: str) -> List[Book]:
        return self.books.find_by_registered_by(user_id)

    def statistics(self) -> dict:
        by_status = self.books.count_by_field("status")
        return {
            "total_books": self.books.count(),
            "total_quantity": self.books.total_quantity(),
            "available_books": by_status.get(BookStatus.AVAILABLE.value, 0),
            "by_status": by_status,
            "by_type": self.books.count_by_field("type"),
            "by_language": self.books.count_by_field("language"),
        }

    @staticmethod
    def options() -> Dict[str, List[str]]:
        return {
            "languages": BookLanguage.values(),
            "types": BookType.values(),
            "statuses": BookStatus.values(),
        }


# =========================
# loans
# =========================

@dataclass
class ReturnReceipt:
    loan: BookLoan
    was_overdue: bool
    overdue_days: int


class LoanService:
    def __init__(
        self,
        books: BookRepository,
        users: UserRepository,
        loans: BookLoanRepository,
        policy: LoanPolicy,
        time_provider: TimeProvider,
        unit_of_work: UnitOfWork,
    ) -> None:
        self.books = books
        self.users = users
        self.loans = loans
        self.policy = policy
        self.time = time_provider
        self.uow = unit_of_work

    # ---- lookups

    def _user(self, user_id: str, session=None) -> User:
        user = self.users.find_by_id(user_id, session)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def _book(self, book_id: str, session=None) -> Book:
        book = self.books.find_by_id(book_id, session)
        if not book:
            raise NotFoundError(f"Book {book_id} not found")
        return book

    def get_loan(self, loan_id: str, session=None) -> BookLoan:
        loan = self.loans.find_by_id(loan_id, session)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return loan

    def _check_borrower(self, user: User, requested: int, session=None) -> None:
        today = self.time.current_date()
        self.policy.check_user(
            user,
            requested,
            active_count=self.loans.count_active_by_user_id(user.id, session),
            today_count=self.loans.count_loans_created_on(user.id, today, session),
            overdue_count=self.loans.count_overdue_by_user_id(user.id, today, session),
            recent_overdue_returns=self.loans.count_overdue_returns_since(
                user.id, self.policy.blacklist_since(today), session
            ),
        )

    def _commit(self, loans: Sequence[BookLoan], session) -> None:
        # each distinct book once, then the loans
        saved = set()
        for loan in loans:
            if id(loan.book) not in saved:
                self.books.save(loan.book, session)
                saved.add(id(loan.book))
        for loan in loans:
            self.loans.save(loan, session)

    # ---- borrowing

    def borrow_books(self, user_id: str, book_ids: Sequence[str], due_date: Optional[date] = None) -> List[BookLoan]:
        """One copy of each listed book, all sharing one loan period. All or nothing."""
        book_ids = list(book_ids or [])
        self.policy.check_request(book_ids)
        period = self.policy.loan_period(self.time.current_date(), due_date=due_date)

        def op(session):
            user = self._user(user_id, session)
            self._check_borrower(user, len(book_ids), session)
            books = [self._book(book_id, session) for book_id in book_ids]
            for book in books:
                self.policy.check_book(book, 1)
            loans = [BookLoan.create(book, user, 1, period) for book in books]
            for loan in loans:
                loan.execute_loan()
            self._commit(loans, session)
            return loans

        try:
            loans = self.uow.run(op, "borrow books")
        except LibraryError as exc:
            logger.warning("Borrow rejected for user %s, books %s: %s", user_id, book_ids, exc)
            raise
        logger.info(
            "User %s borrowed %s until %s", user_id, [loan.book.id for loan in loans], period.due_date.isoformat()
        )
        return loans

    def borrow_single(self, user_id: str, book_id: str, quantity: int = 1, loan_days: Optional[int] = None) -> BookLoan:
        amount = LoanQuantity.of(quantity)
        period = self.policy.loan_period(self.time.current_date(), loan_days=loan_days)

        def op(session):
            user = self._user(user_id, session)
            self._check_borrower(user, 1, session)
            book = self._book(book_id, session)
            self.policy.check_book(book, amount.value)
            loan = BookLoan.create(book, user, amount, period)
            loan.execute_loan()
            self._commit([loan], session)
            return loan

        try:
            loan = self.uow.run(op, "borrow book")
        except LibraryError as exc:
            logger.warning("Borrow rejected for user %s, book %s x%s: %s", user_id, book_id, quantity, exc)
            raise
        logger.info("User %s borrowed book %s x%d until %s (loan %s)",
                    user_id, book_id, amount.value, period.due_date.isoformat(), loan.id)
        return loan

    # ---- returning

    def return_book(self, loan_id: str) -> ReturnReceipt:
        return self.return_books([loan_id])[0]

    def return_books(self, loan_ids: Sequence[str]) -> List[ReturnReceipt]:
        loan_ids = list(loan_ids or [])
        if not loan_ids:
            raise InvalidArgumentError("Select at least one loan to return")
        if len(set(loan_ids)) != len(loan_ids):
            raise InvalidArgumentError("A loan appears more than once in the request")

        def op(session):
            today = self.time.current_date()
            found = {loan.id: loan for loan in self.loans.find_by_id_in(loan_ids, session)}
            missing = [i for i in loan_ids if i not in found]
            if missing:
                raise NotFoundError(f"Loan {missing[0]} not found")
            loans = [found[i] for i in loan_ids]
            for loan in loans:
                if not loan.is_active():
                    raise InvalidStateError(f"Only active loans can be returned (loan {loan.id} is {loan.status.value})")
            receipts = []
            for loan in loans:
                overdue = loan.is_overdue(today)
                receipts.append(ReturnReceipt(loan, overdue, loan.overdue_days(today) if overdue else 0))
                loan.return_book(self.time)
            self._commit(loans, session)
            return receipts

        receipts = self.uow.run(op, "return books")
        for r in receipts:
            if r.was_overdue:
                logger.info("Loan %s returned %d day(s) late", r.loan.id, r.overdue_days)
            else:
                logger.info("Loan %s returned", r.loan.id)
        return receipts

    # ---- changes

    def extend_loan(self, loan_id: str, days: int) -> BookLoan:
        def op(session):
            today = self.time.current_date()
            loan = self.get_loan(loan_id, session)
            self.policy.check_extension(loan, days, today)
            loan.extend_loan(days, today)
            self.loans.save(loan, session)
            return loan

        try:
            loan = self.uow.run(op, "extend loan")
        except LibraryError as exc:
            logger.warning("Extension of loan %s by %s days rejected: %s", loan_id, days, exc)
            raise
        logger.info("Loan %s extended by %d days, now due %s", loan.id, days, loan.loan_period.due_date.isoformat())
        return loan

    def cancel_loan(self, loan_id: str) -> BookLoan:
        def op(session):
            loan = self.get_loan(loan_id, session)
            self.policy.check_cancellation(loan, self.time.current_date())
            loan.cancel_loan()
            self._commit([loan], session)
            return loan

        loan = self.uow.run(op, "cancel loan")
        logger.info("Loan %s cancelled, %s cop(ies) back on '%s'", loan.id, loan.quantity, loan.book.title)
        return loan

    # ---- queries

    def list_loans(self, page: int = 0, size: int = 20, status=None, user_id: Optional[str] = None) -> Page:
        _page_args(page, size)
        items, total = self.loans.find_all(page, size, LoanStatus.parse(status) if status else None, user_id)
        return Page(items, total, page, size)

    def user_loans(self, user_id: str, status=None) -> List[BookLoan]:
        if status:
            return self.loans.find_by_user_id_and_status(user_id, LoanStatus.parse(status))
        return self.loans.find_by_user_id(user_id)

    def returnable_loans(self, user_id: str) -> List[BookLoan]:
        return self.loans.find_by_user_id_and_status(user_id, LoanStatus.ACTIVE)

    def return_history(self, user_id: str) -> List[BookLoan]:
        return self.loans.find_by_user_id_and_status(user_id, LoanStatus.RETURNED)

    def active_loans(self) -> List[BookLoan]:
        return self.loans.find_active_loans()

    def overdue_loans(self) -> List[BookLoan]:
        return self.loans.find_overdue_loans(self.time.current_date())

    def upcoming_due_loans(self, days: int = 3) -> List[BookLoan]:
        if days < 0:
            raise InvalidArgumentError("Days must be zero or positive")
        today = self.time.current_date()
        return self.loans.find_upcoming_due_loans(today, today + timedelta(days=days))


# =========================
# return statistics
# =========================

@dataclass
class ReturnStatistics:
    start: date
    end: date
    total_returns: int
    overdue_returns: int

    @property
    def on_time_returns(self) -> int:
        return self.total_returns - self.overdue_returns

    @property
    def overdue_rate(self) -> float:
        if not self.total_returns:
            return 0.0
        return round(self.overdue_returns * 100.0 / self.total_returns, 2)


class ReturnStatisticsService:
    def __init__(self, loans: BookLoanRepository, time_provider: TimeProvider) -> None:
        self.loans = loans
        self.time = time_provider

    def for_period(self, start: date, end: date, user_id: Optional[str] = None) -> ReturnStatistics:
        if end < start:
            raise InvalidArgumentError("End date cannot be before start date")
        returned = self.loans.find_returned_between(start, end, user_id)
        late = sum(1 for loan in returned if loan.was_returned_late())
        return ReturnStatistics(start, end, len(returned), late)

    def today(self) -> ReturnStatistics:
        today = self.time.current_date()
        return self.for_period(today, today)

    def this_week(self) -> ReturnStatistics:
        today = self.time.current_date()
        return self.for_period(today - timedelta(days=today.weekday()), today)

    def this_month(self) -> ReturnStatistics:
        today = self.time.current_date()
        return self.for_period(today.replace(day=1), today)

    def dashboard(self) -> dict:
        today = self.time.current_date()
        return {
            "today": self.today(),
            "week": self.this_week(),
            "month": self.this_month(),
            "active_loans": self.loans.count({"status": LoanStatus.ACTIVE.value}),
            "overdue_loans": len(self.loans.find_overdue_loans(today)),
        }

    def for_user(self, user_id: str) -> dict:
        today = self.time.current_date()
        loans = self.loans.find_by_user_id(user_id)
        returned = [loan for loan in loans if loan.is_returned()]
        late = sum(1 for loan in returned if loan.was_returned_late())
        return {
            "user_id": user_id,
            "total_loans": len(loans),
            "active_loans": sum(1 for loan in loans if loan.is_active()),
            "currently_overdue": sum(1 for loan in loans if loan.is_overdue(today)),
            "total_returns": len(returned),
            "overdue_returns": late,
            "overdue_rate": round(late * 100.0 / len(returned), 2) if returned else 0.0,
        }


# =========================
# reminders
# =========================

@dataclass
class ReminderReport:
    due_soon: List[BookLoan] = field(default_factory=list)
    overdue: List[BookLoan] = field(default_factory=list)


class LoanReminderSweep:
    """Finds loans that are due soon or overdue and logs them. Never writes."""

    def __init__(self, loans: BookLoanRepository, time_provider: TimeProvider, due_soon_days: int = 3) -> None:
        self.loans = loans
        self.time = time_provider
        self.due_soon_days = due_soon_days

    def run(self) -> ReminderReport:
        today = self.time.current_date()
        report = ReminderReport(
            due_soon=self.loans.find_upcoming_due_loans(today, today + timedelta(days=self.due_soon_days)),
            overdue=self.loans.find_overdue_loans(today),
        )
        for loan in report.due_soon:
            logger.info(
                "Reminder: loan %s ('%s') for %s is due in %d day(s) on %s",
                loan.id, loan.book.title, loan.user.email, loan.days_until_due(today),
                loan.loan_period.due_date.isoformat(),
            )
        for loan in report.overdue:
            logger.info(
                "Overdue: loan %s ('%s') for %s is %d day(s) late",
                loan.id, loan.book.title, loan.user.email, loan.overdue_days(today),
            )
        logger.info("Reminder sweep: %d due soon, %d overdue", len(report.due_soon), len(report.overdue))
        return report


# =========================
# facade
# =========================

class Library:
    """Wires repositories, policy and services around one database."""

    def __init__(
        self,
        db: Database,
        settings: Optional[Settings] = None,
        time_provider: Optional[TimeProvider] = None,
        policy_config: Optional[LoanPolicyConfig] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.time = time_provider or TimeProvider()
        policy_config = policy_config or self.settings.policy

        self.user_repo = UserRepository(db, self.time)
        self.book_repo = BookRepository(db, self.time)
        self.loan_repo = BookLoanRepository(db, self.book_repo, self.user_repo, self.time)
        self.policy = LoanPolicy(policy_config)
        uow = UnitOfWork(db, self.settings.mongo_transactions, self.settings.conflict_retries)

        self.users = UserService(self.user_repo, self.time)
        self.books = BookService(self.book_repo, self.loan_repo, uow)
        self.loans = LoanService(self.book_repo, self.user_repo, self.loan_repo, self.policy, self.time, uow)
        self.returns = ReturnStatisticsService(self.loan_repo, self.time)
        self.reminders = LoanReminderSweep(self.loan_repo, self.time, policy_config.due_soon_days)
