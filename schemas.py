"""
API Schemas for the library loan service

Request bodies are validated here; response models are built from domain
entities with ``from_domain``. Collections themselves are described by the
repositories (libraryuser, book, bookloan).
"""
from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from domain import Book, BookLoan, User


# ---- auth / users

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RegisterPayload(BaseModel):
    name: str = Field(..., min_length=1, description="Full name")
    email: str = Field(..., min_length=3, description="Email address, used to log in")
    password: str = Field(..., min_length=4)


class UserOut(BaseModel):
    id: str
    name: str
    email: str
    role: str = Field(..., description="USER or ADMIN")
    status: str
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role.value,
            status=user.status.value,
            last_login_at=user.last_login_at,
        )


class UserPage(BaseModel):
    items: List[UserOut]
    total: int
    page: int
    size: int


class RoleChangeRequest(BaseModel):
    role: str


# ---- books

class CreateBookRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    language: str = Field(..., description="One of the supported languages, case-insensitive")
    type: str = Field(..., description="One of the supported book types, case-insensitive")
    quantity: int = Field(1, ge=1, le=9999, description="Copies to add to the shelf")


class UpdateBookRequest(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    language: Optional[str] = None
    type: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=0, le=9999)


class BookStatusChangeRequest(BaseModel):
    status: str


class AddStockRequest(BaseModel):
    amount: int = Field(..., ge=1)


class BookOut(BaseModel):
    id: str
    title: str
    language: str
    type: str
    quantity: int
    status: str
    available: bool
    registered_by: Optional[str] = None
    version: int = 0

    @classmethod
    def from_domain(cls, book: Book) -> "BookOut":
        return cls(
            id=book.id,
            title=book.title.value,
            language=book.language.value,
            type=book.type.value,
            quantity=book.quantity.value,
            status=book.status.value,
            available=book.is_available(),
            registered_by=book.registered_by,
            version=book.version,
        )


class BookPage(BaseModel):
    items: List[BookOut]
    total: int
    page: int
    size: int


class BookOptions(BaseModel):
    languages: List[str]
    types: List[str]
    statuses: List[str]


class BookStatistics(BaseModel):
    total_books: int
    total_quantity: int
    available_books: int
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    by_language: Dict[str, int]


# ---- loans

class BorrowRequest(BaseModel):
    book_ids: List[str] = Field(..., description="One copy of each book is borrowed")
    due_date: Optional[date] = Field(None, description="Defaults to the standard loan length")
    user_id: Optional[str] = Field(None, description="Admins may borrow on behalf of a user")


class SingleLoanRequest(BaseModel):
    book_id: str
    quantity: int = Field(1, ge=1)
    loan_days: Optional[int] = None
    user_id: Optional[str] = None


class ReturnRequest(BaseModel):
    loan_ids: List[str]


class ExtendRequest(BaseModel):
    days: int


class LoanOut(BaseModel):
    id: str
    book_id: str
    book_title: str
    user_id: str
    user_name: str
    quantity: int
    loan_date: date
    due_date: date
    status: str
    extension_count: int = 0
    returned_on: Optional[date] = None
    overdue: bool = False
    overdue_days: int = 0
    days_until_due: Optional[int] = None

    @classmethod
    def from_domain(cls, loan: BookLoan, today: date) -> "LoanOut":
        overdue = loan.is_overdue(today)
        return cls(
            id=loan.id,
            book_id=loan.book.id,
            book_title=loan.book.title.value,
            user_id=loan.user.id,
            user_name=loan.user.name,
            quantity=loan.quantity.value,
            loan_date=loan.loan_period.loan_date,
            due_date=loan.loan_period.due_date,
            status=loan.status.value,
            extension_count=loan.extension_count,
            returned_on=loan.returned_on,
            overdue=overdue,
            overdue_days=loan.overdue_days(today) if overdue else 0,
            days_until_due=loan.days_until_due(today) if loan.is_active() else None,
        )


class LoanPage(BaseModel):
    items: List[LoanOut]
    total: int
    page: int
    size: int


class ReturnOut(BaseModel):
    loan: LoanOut
    was_overdue: bool
    overdue_days: int


# ---- statistics

class ReturnStatisticsOut(BaseModel):
    start: date
    end: date
    total_returns: int
    overdue_returns: int
    on_time_returns: int
    overdue_rate: float = Field(..., description="Percentage of returns that came back late")

    @classmethod
    def from_domain(cls, stats) -> "ReturnStatisticsOut":
        return cls(
            start=stats.start,
            end=stats.end,
            total_returns=stats.total_returns,
            overdue_returns=stats.overdue_returns,
            on_time_returns=stats.on_time_returns,
            overdue_rate=stats.overdue_rate,
        )


class DashboardOut(BaseModel):
    today: ReturnStatisticsOut
    week: ReturnStatisticsOut
    month: ReturnStatisticsOut
    active_loans: int
    overdue_loans: int


class UserLoanStatistics(BaseModel):
    user_id: str
    total_loans: int
    active_loans: int
    currently_overdue: int
    total_returns: int
    overdue_returns: int
    overdue_rate: float


class ReminderOut(BaseModel):
    due_soon: List[LoanOut]
    overdue: List[LoanOut]


class ErrorOut(BaseModel):
    detail: str
    code: str
