"""
Domain model for the library: catalog values, users, books and loans.

Value objects are frozen dataclasses that validate on construction and return
new instances from every mutation. Entities are plain dataclasses whose
methods enforce their own state rules; none of them touch the database.

A BookLoan is the only thing that moves Book stock during the loan
lifecycle (execute_loan, and return_book or cancel_loan to give copies back).
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Callable, ClassVar, List, Optional, Union

from errors import InvalidArgumentError, InvalidStateError


# =========================
# time source
# =========================

class TimeProvider:
    """Wraps the clock so overdue and due-date maths can run on a fixed day in tests."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def current_datetime(self) -> datetime:
        return self._clock()

    def current_date(self) -> date:
        return self.current_datetime().date()


class FixedTimeProvider(TimeProvider):
    def __init__(self, moment: Union[date, datetime]) -> None:
        self.moment = _as_datetime(moment)
        super().__init__(lambda: self.moment)

    def set(self, moment: Union[date, datetime]) -> None:
        self.moment = _as_datetime(moment)

    def advance(self, days: int = 0, **kwargs) -> None:
        self.moment = self.moment + timedelta(days=days, **kwargs)


def _as_datetime(moment: Union[date, datetime]) -> datetime:
    if isinstance(moment, datetime):
        return moment
    return datetime.combine(moment, time(9, 0), tzinfo=timezone.utc)


# Fallback clock for date arguments left out by callers; UTC like TimeProvider.
default_clock: TimeProvider = TimeProvider()


def _today() -> date:
    return default_clock.current_date()


# =========================
# enums
# =========================

class _Choice(str, Enum):
    """Closed set of upper-case string values, parsed case-insensitively."""

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        if value is None or not str(value).strip():
            raise InvalidArgumentError(f"{cls.__name__} is required")
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            supported = ", ".join(m.value for m in cls)
            raise InvalidArgumentError(
                f"Unsupported {cls.__name__} value: {value!r}. Supported: {supported}"
            ) from None

    @classmethod
    def values(cls) -> List[str]:
        return [m.value for m in cls]


class BookLanguage(_Choice):
    KOREAN = "KOREAN"
    ENGLISH = "ENGLISH"
    JAPANESE = "JAPANESE"
    CHINESE = "CHINESE"
    SPANISH = "SPANISH"
    FRENCH = "FRENCH"
    GERMAN = "GERMAN"


class BookType(_Choice):
    FICTION = "FICTION"
    NON_FICTION = "NON_FICTION"
    SCIENCE = "SCIENCE"
    TECHNOLOGY = "TECHNOLOGY"
    HISTORY = "HISTORY"
    BIOGRAPHY = "BIOGRAPHY"
    REFERENCE = "REFERENCE"
    TEXTBOOK = "TEXTBOOK"
    CHILDREN = "CHILDREN"
    COMIC = "COMIC"


class BookStatus(_Choice):
    AVAILABLE = "AVAILABLE"
    BORROWED = "BORROWED"
    RESERVED = "RESERVED"
    MAINTENANCE = "MAINTENANCE"
    LOST = "LOST"
    DAMAGED = "DAMAGED"

    def can_borrow(self) -> bool:
        return self is BookStatus.AVAILABLE

    def can_reserve(self) -> bool:
        return self in (BookStatus.AVAILABLE, BookStatus.BORROWED)

    def is_operational(self) -> bool:
        return self not in (BookStatus.LOST, BookStatus.DAMAGED)

    def is_problematic(self) -> bool:
        return self in (BookStatus.LOST, BookStatus.DAMAGED)


class LoanStatus(_Choice):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    CANCELLED = "CANCELLED"


class Role(_Choice):
    USER = "USER"
    ADMIN = "ADMIN"


class UserStatus(_Choice):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


# =========================
# value objects
# =========================

def _require_positive(amount, what: str) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidArgumentError(f"{what} must be a positive integer")
    return amount


@dataclass(frozen=True)
class _Quantity:
    value: int

    MIN: ClassVar[int] = 0
    MAX: ClassVar[Optional[int]] = None
    LABEL: ClassVar[str] = "Quantity"

    def __post_init__(self) -> None:
        value = self.value
        if value is None:
            raise InvalidArgumentError(f"{self.LABEL} is required")
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidArgumentError(f"{self.LABEL} must be an integer")
        if value < self.MIN:
            raise InvalidArgumentError(f"{self.LABEL} must be at least {self.MIN}")
        if self.MAX is not None and value > self.MAX:
            raise InvalidArgumentError(f"{self.LABEL} cannot exceed {self.MAX}")

    @classmethod
    def of(cls, value: int):
        return cls(value)

    def increase(self, amount: int):
        _require_positive(amount, "Increase amount")
        return type(self).of(self.value + amount)

    def decrease(self, amount: int):
        _require_positive(amount, "Decrease amount")
        if amount > self.value:
            raise InvalidArgumentError(
                f"Cannot decrease {self.LABEL.lower()} {self.value} by {amount}"
            )
        return type(self).of(self.value - amount)

    def has_stock(self, required: Optional[int] = None) -> bool:
        if required is None:
            return self.value > 0
        return self.value >= required

    def __int__(self) -> int:
        return self.value

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class BookQuantity(_Quantity):
    MIN: ClassVar[int] = 0
    MAX: ClassVar[Optional[int]] = 9999
    LABEL: ClassVar[str] = "Book quantity"


@dataclass(frozen=True)
class LoanQuantity(_Quantity):
    MIN: ClassVar[int] = 1
    MAX: ClassVar[Optional[int]] = None
    LABEL: ClassVar[str] = "Loan quantity"


@dataclass(frozen=True)
class BookTitle:
    value: str

    MAX_LENGTH: ClassVar[int] = 200

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value.strip():
            raise InvalidArgumentError("Book title is required")
        trimmed = self.value.strip()
        if len(trimmed) > self.MAX_LENGTH:
            raise InvalidArgumentError(f"Book title cannot exceed {self.MAX_LENGTH} characters")
        object.__setattr__(self, "value", trimmed)

    @classmethod
    def of(cls, value: str) -> "BookTitle":
        return cls(value)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class LoanPeriod:
    """Loan date to due date, both inclusive calendar days."""

    loan_date: date
    due_date: date

    DEFAULT_LOAN_DAYS: ClassVar[int] = 14

    def __post_init__(self) -> None:
        if self.loan_date is None:
            raise InvalidArgumentError("Loan date is required")
        if self.due_date is None:
            raise InvalidArgumentError("Due date is required")
        if self.due_date < self.loan_date:
            raise InvalidArgumentError("Due date cannot be earlier than the loan date")

    @classmethod
    def of(cls, loan_date: date, due_date: date) -> "LoanPeriod":
        return cls(loan_date, due_date)

    @classmethod
    def create_default(cls, today: Optional[date] = None, days: Optional[int] = None) -> "LoanPeriod":
        today = today or _today()
        return cls(today, today + timedelta(days=days or cls.DEFAULT_LOAN_DAYS))

    @classmethod
    def of_days(cls, days: int, today: Optional[date] = None) -> "LoanPeriod":
        _require_positive(days, "Loan days")
        today = today or _today()
        return cls(today, today + timedelta(days=days))

    def extend(self, days: int) -> "LoanPeriod":
        _require_positive(days, "Extension days")
        return LoanPeriod(self.loan_date, self.due_date + timedelta(days=days))

    def is_overdue(self, today: Optional[date] = None) -> bool:
        today = today or _today()
        return today > self.due_date

    def overdue_days(self, today: Optional[date] = None) -> int:
        today = today or _today()
        return max(0, (today - self.due_date).days)

    def days_until_due(self, today: Optional[date] = None) -> int:
        today = today or _today()
        return (self.due_date - today).days

    def total_loan_days(self) -> int:
        return (self.due_date - self.loan_date).days


# =========================
# entities
# =========================

@dataclass(eq=False)
class User:
    name: str
    email: str
    password_hash: str
    role: Role = Role.USER
    status: UserStatus = UserStatus.ACTIVE
    id: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def create(cls, name: str, email: str, password_hash: str, role: Role = Role.USER) -> "User":
        if not name or not name.strip():
            raise InvalidArgumentError("Name is required")
        if not email or not email.strip():
            raise InvalidArgumentError("Email is required")
        if not password_hash:
            raise InvalidArgumentError("Password is required")
        return cls(
            name=name.strip(),
            email=email.strip().lower(),
            password_hash=password_hash,
            role=Role.parse(role),
        )

    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def activate(self) -> None:
        if self.status == UserStatus.ACTIVE:
            raise InvalidStateError("User is already active")
        self.status = UserStatus.ACTIVE

    def deactivate(self) -> None:
        if self.status == UserStatus.INACTIVE:
            raise InvalidStateError("User is already inactive")
        self.status = UserStatus.INACTIVE

    def change_role(self, role: Role) -> None:
        if role is None:
            raise InvalidArgumentError("Role is required")
        self.role = Role.parse(role)

    def record_login(self, time_provider: TimeProvider) -> None:
        self.last_login_at = time_provider.current_datetime()


@dataclass(eq=False)
class Book:
    title: BookTitle
    language: BookLanguage
    type: BookType
    quantity: BookQuantity
    registered_by: Optional[str]
    status: BookStatus = BookStatus.AVAILABLE
    id: Optional[str] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def create(cls, title, language, type, quantity, registered_by: User) -> "Book":
        """Build a new AVAILABLE book; every argument is required.

        Raw strings/ints are accepted and turned into the matching value
        objects, so ``Book.create("Dune", "english", "fiction", 3, admin)`` works.
        """
        for name, value in (
            ("title", title),
            ("language", language),
            ("type", type),
            ("quantity", quantity),
            ("registered_by", registered_by),
        ):
            if value is None:
                raise InvalidArgumentError(f"Book {name} is required")
        return cls(
            title=title if isinstance(title, BookTitle) else BookTitle.of(title),
            language=BookLanguage.parse(language),
            type=BookType.parse(type),
            quantity=quantity if isinstance(quantity, BookQuantity) else BookQuantity.of(quantity),
            registered_by=registered_by.id,
            status=BookStatus.AVAILABLE,
        )

    def update_info(self, title=None, language=None, type=None, quantity=None) -> None:
        # parse everything first so a bad value leaves the book untouched
        new_title = BookTitle.of(title) if isinstance(title, str) else title
        new_language = BookLanguage.parse(language) if language is not None else None
        new_type = BookType.parse(type) if type is not None else None
        new_quantity = BookQuantity.of(quantity) if isinstance(quantity, int) else quantity
        if new_title is not None:
            self.title = new_title
        if new_language is not None:
            self.language = new_language
        if new_type is not None:
            self.type = new_type
        if new_quantity is not None:
            self.quantity = new_quantity
            self._sync_status()

    def can_borrow(self, amount: int) -> bool:
        return self.status == BookStatus.AVAILABLE and self.quantity.has_stock(amount)

    def borrow_stock(self, amount: int) -> None:
        if not self.can_borrow(amount):
            raise InvalidStateError(
                f"Book '{self.title}' cannot be borrowed: status {self.status.value}, stock {self.quantity}"
            )
        self.quantity = self.quantity.decrease(amount)
        self._sync_status()

    def return_stock(self, amount: int) -> None:
        self.quantity = self.quantity.increase(amount)
        self._sync_status()

    def add_stock(self, amount: int) -> None:
        self.quantity = self.quantity.increase(amount)
        self._sync_status()

    def change_status(self, new_status: BookStatus) -> None:
        if new_status is None:
            raise InvalidArgumentError("Book status is required")
        self.status = BookStatus.parse(new_status)

    def is_available(self) -> bool:
        return self.status == BookStatus.AVAILABLE and self.quantity.has_stock()

    def is_same_book(self, title: BookTitle, language: BookLanguage, type: BookType) -> bool:
        return self.title == title and self.language == language and self.type == type

    def _sync_status(self) -> None:
        if self.status == BookStatus.AVAILABLE and not self.quantity.has_stock():
            self.status = BookStatus.BORROWED
        elif self.status == BookStatus.BORROWED and self.quantity.has_stock():
            self.status = BookStatus.AVAILABLE


@dataclass(eq=False)
class BookLoan:
    """One user holding ``quantity`` copies of one book for ``loan_period``.

    States: ACTIVE -> RETURNED | CANCELLED. Both terminal states are sinks.
    """

    book: Book
    user: User
    quantity: LoanQuantity
    loan_period: LoanPeriod
    status: LoanStatus = LoanStatus.ACTIVE
    id: Optional[str] = None
    extension_count: int = 0
    returned_on: Optional[date] = None
    executed: bool = False
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def create(cls, book: Book, user: User, quantity, loan_period: LoanPeriod) -> "BookLoan":
        if book is None:
            raise InvalidArgumentError("Book to borrow is required")
        if user is None:
            raise InvalidArgumentError("Borrower is required")
        if quantity is None:
            raise InvalidArgumentError("Loan quantity is required")
        if loan_period is None:
            raise InvalidArgumentError("Loan period is required")
        if not isinstance(quantity, LoanQuantity):
            quantity = LoanQuantity.of(quantity)

        if not user.is_active():
            raise InvalidStateError("Inactive users cannot borrow books")
        if not book.can_borrow(quantity.value):
            raise InvalidStateError(f"Book '{book.title}' cannot be borrowed right now")

        return cls(book=book, user=user, quantity=quantity, loan_period=loan_period)

    @classmethod
    def create_with_default_period(cls, book: Book, user: User, quantity, today: Optional[date] = None) -> "BookLoan":
        return cls.create(book, user, quantity, LoanPeriod.create_default(today))

    # ---- transitions

    def execute_loan(self) -> None:
        if self.status != LoanStatus.ACTIVE:
            raise InvalidStateError("Only active loans can be executed")
        if self.executed:
            raise InvalidStateError("Loan has already been executed")
        self.book.borrow_stock(self.quantity.value)
        self.executed = True

    def return_book(self, time_provider: Optional[TimeProvider] = None) -> None:
        if self.status != LoanStatus.ACTIVE:
            raise InvalidStateError("Only active loans can be returned")
        if not self.executed:
            raise InvalidStateError("Loan was never executed, nothing to return")
        self.book.return_stock(self.quantity.value)
        self.status = LoanStatus.RETURNED
        self.returned_on = (time_provider or default_clock).current_date()

    def extend_loan(self, days: int, today: Optional[date] = None) -> None:
        if self.status != LoanStatus.ACTIVE:
            raise InvalidStateError("Only active loans can be extended")
        if self.is_overdue(today):
            raise InvalidStateError("Overdue loans cannot be extended")
        self.loan_period = self.loan_period.extend(days)
        self.extension_count += 1

    def cancel_loan(self) -> None:
        if self.status != LoanStatus.ACTIVE:
            raise InvalidStateError("Only active loans can be cancelled")
        if self.executed:
            self.book.return_stock(self.quantity.value)
        self.status = LoanStatus.CANCELLED

    # ---- queries

    def is_overdue(self, today: Optional[date] = None) -> bool:
        return self.status == LoanStatus.ACTIVE and self.loan_period.is_overdue(today)

    def overdue_days(self, today: Optional[date] = None) -> int:
        return self.loan_period.overdue_days(today)

    def days_until_due(self, today: Optional[date] = None) -> int:
        return self.loan_period.days_until_due(today)

    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    def is_returned(self) -> bool:
        return self.status == LoanStatus.RETURNED

    def was_returned_late(self) -> bool:
        return self.returned_on is not None and self.returned_on > self.loan_period.due_date
