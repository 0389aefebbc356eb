import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pymongo.errors import PyMongoError

from config import settings
from database import db, ensure_indexes
from domain import BookLoan, User
from errors import (
    AuthenticationError,
    ConcurrencyConflictError,
    DuplicateError,
    InvalidArgumentError,
    InvalidStateError,
    LibraryError,
    LoanPolicyViolation,
    NotFoundError,
)
from schemas import (
    AddStockRequest,
    BookOptions,
    BookOut,
    BookPage,
    BookStatistics,
    BookStatusChangeRequest,
    BorrowRequest,
    CreateBookRequest,
    DashboardOut,
    ExtendRequest,
    LoanOut,
    LoanPage,
    RegisterPayload,
    ReminderOut,
    ReturnOut,
    ReturnRequest,
    ReturnStatisticsOut,
    RoleChangeRequest,
    SingleLoanRequest,
    Token,
    UpdateBookRequest,
    UserLoanStatistics,
    UserOut,
    UserPage,
)
from security import make_token, parse_token
from services import Library

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

_library: Optional[Library] = None


def get_library() -> Library:
    global _library
    if _library is None:
        _library = Library(db, settings)
    return _library


async def _reminder_loop(library: Library, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(library.reminders.run)
        except (PyMongoError, LibraryError):
            logger.exception("Reminder sweep failed, will try again in %ds", interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    library = get_library()
    ensure_indexes(db)
    admin = library.users.ensure_default_admin(settings.admin_email, settings.admin_password)
    if admin:
        logger.info("Default admin account: %s", admin.email)
    task = None
    if settings.reminder_interval_seconds > 0:
        task = asyncio.create_task(_reminder_loop(library, settings.reminder_interval_seconds))
        logger.info("Reminder sweep every %ds", settings.reminder_interval_seconds)
    yield
    if task:
        task.cancel()


app = FastAPI(title="Library Loan API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


# Errors

_ERROR_STATUS = [
    (InvalidArgumentError, 400),
    (AuthenticationError, 401),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (DuplicateError, 409),
    (ConcurrencyConflictError, 409),
    (LoanPolicyViolation, 422),
]


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    status = next((code for kind, code in _ERROR_STATUS if isinstance(exc, kind)), 400)
    return JSONResponse(status_code=status, content={"detail": exc.message, "code": exc.code})


# Auth helpers

async def get_current_user(
    token: str = Depends(oauth2_scheme),
    library: Library = Depends(get_library),
) -> User:
    uid = parse_token(token)
    if not uid:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    user = library.user_repo.find_by_id(uid)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active():
        raise HTTPException(status_code=403, detail="Account is not active")
    return user


def require_admin(current: User = Depends(get_current_user)) -> User:
    if not current.is_admin():
        raise HTTPException(status_code=403, detail="Admins only")
    return current


def _own_loan(library: Library, loan_id: str, current: User) -> BookLoan:
    loan = library.loans.get_loan(loan_id)
    if loan.user.id != current.id and not current.is_admin():
        raise HTTPException(status_code=403, detail="Forbidden")
    return loan


def _borrower_id(requested: Optional[str], current: User) -> str:
    if requested and requested != current.id:
        if not current.is_admin():
            raise HTTPException(status_code=403, detail="Only admins can borrow for another user")
        return requested
    return current.id


def _loans_out(library: Library, loans: List[BookLoan]) -> List[LoanOut]:
    today = library.time.current_date()
    return [LoanOut.from_domain(loan, today) for loan in loans]


def _return_out(library: Library, receipt) -> ReturnOut:
    return ReturnOut(
        loan=LoanOut.from_domain(receipt.loan, library.time.current_date()),
        was_overdue=receipt.was_overdue,
        overdue_days=receipt.overdue_days,
    )


# Health
@app.get("/")
def root():
    return {"name": "Library Loan API", "status": "ok"}


# Auth
@app.post("/auth/register", response_model=Token)
def register(payload: RegisterPayload, library: Library = Depends(get_library)):
    user = library.users.register(payload.name, payload.email, payload.password)
    return Token(access_token=make_token(user.id))


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), library: Library = Depends(get_library)):
    user = library.users.authenticate(form_data.username, form_data.password)
    return Token(access_token=make_token(user.id))


@app.get("/me", response_model=UserOut)
def me(current: User = Depends(get_current_user)):
    return UserOut.from_domain(current)


@app.get("/me/loans", response_model=List[LoanOut])
def my_loans(
    status: Optional[str] = None,
    current: User = Depends(get_current_user),
    library: Library = Depends(get_library),
):
    return _loans_out(library, library.loans.user_loans(current.id, status))


@app.get("/me/loans/returnable", response_model=List[LoanOut])
def my_returnable_loans(current: User = Depends(get_current_user), library: Library = Depends(get_library)):
    return _loans_out(library, library.loans.returnable_loans(current.id))


@app.get("/me/returns", response_model=List[LoanOut])
def my_return_history(current: User = Depends(get_current_user), library: Library = Depends(get_library)):
    return _loans_out(library, library.loans.return_history(current.id))


@app.get("/me/statistics", response_model=UserLoanStatistics)
def my_statistics(current: User = Depends(get_current_user), library: Library = Depends(get_library)):
    return library.returns.for_user(current.id)


# Books (admin endpoints for create/update/delete)
@app.get("/books/options", response_model=BookOptions)
def book_options(library: Library = Depends(get_library)):
    return library.books.options()


@app.get("/books/statistics", response_model=BookStatistics)
def book_statistics(current: User = Depends(require_admin), library: Library = Depends(get_library)):
    return library.books.statistics()


@app.get("/books/available", response_model=List[BookOut])
def available_books(library: Library = Depends(get_library)):
    return [BookOut.from_domain(b) for b in library.books.available_books()]


@app.get("/books/borrowed", response_model=List[BookOut])
def borrowed_books(library: Library = Depends(get_library)):
    return [BookOut.from_domain(b) for b in library.books.borrowed_books()]


@app.get("/books", response_model=BookPage)
def search_books(
    keyword: Optional[str] = None,
    type: Optional[str] = None,
    language: Optional[str] = None,
    status: Optional[str] = None,
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    library: Library = Depends(get_library),
):
    result = library.books.search(keyword, type, language, status, page, size)
    return BookPage(
        items=[BookOut.from_domain(b) for b in result.items],
        total=result.total,
        page=result.page,
        size=result.size,
    )


@app.post("/books", response_model=BookOut)
def create_book(
    payload: CreateBookRequest,
    current: User = Depends(require_admin),
    library: Library = Depends(get_library),
):
    book = library.books.register(payload.title, payload.language, payload.type, payload.quantity, current)
    return BookOut.from_domain(book)


@app.get("/books/{book_id}", response_model=BookOut)
def get_book(book_id: str, library: Library = Depends(get_library)):
    return BookOut.from_domain(library.books.get(book_id))


@app.put("/books/{book_id}", response_model=BookOut)
def update_book(
    book_id: str,
    payload: UpdateBookRequest,
    current: User = Depends(require_admin),
    library: Library = Depends(get_library),
):
    book = library.books.update(book_id, payload.title, payload.language, payload.type, payload.quantity)
    return BookOut.from_domain(book)


@app.delete("/books/{book_id}")
def delete_book(book_id: str, current: User = Depends(require_admin), library: Library = Depends(get_library)):
    library.books.delete(book_id)
    return {"deleted": True}


@app.patch("/books/{book_id}/status", response_model=BookOut)
def change_book_status(
    book_id: str,
    payload: BookStatusChangeRequest,
    current: User = Depends(require_admin),
    library: Library = Depends(get_library),
):
    return BookOut.from_domain(library.books.change_status(book_id, payload.status))


@app.post("/books/{book_id}/stock", response_model=BookOut)
def add_book_stock(
    book_id: str,
    payload: AddStockRequest,
    current: User = Depends(require_admin),
    library: Library = Depends(get_library),
):
    return BookOut.from_domain(library.books.add_stock(book_id, payload.amount))


# Loans
@app.post("/loans", response_model=List[LoanOut])
def borrow_books(
    payload: BorrowRequest,
    current: User = Depends(get_current_user),
    library: Library = Depends(get_library),
):
    user_id = _borrower_id(payload.user_id, current)
    loans = library.loans.borrow_books(user_id, payload.book_ids, payload.due_date)
    return _loans_out(library, loans)


@app.post("/loans/single", response_model=LoanOut)
def borrow_single(
    payload: SingleLoanRequest,
    current: User = Depends(get_current_user),
    library: Library = Depends(get_library),
):
    user_id = _borrower_id(payload.user_id, current)
    loan = library.loans.borrow_single(user_id, payload.book_id, payload.quantity, payload.loan_days)
    return LoanOut.from_domain(loan, library.time.current_date())


@app.get("/loans", response_model=LoanPage)
def list_loans(
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    current: User = Depends(require_admin),
    library: Library = Depends(get_library),
):
    result = library.loans.list_loans(page, size, status, user_id)
    return LoanPage(items=_loans_out(library, result.items), total=result.total, page=result.page, size=result.size)


@app.get("/loans/active", response_model=List[LoanOut])
def active_loans(current: User = Depends(require_admin), library: Library = Depends(get_library)):
    return _loans_out(library, library.loans.active_loans())


@app.get("/loans/overdue", response_model=List[LoanOut])
def overdue_loans(current: User = Depends(require_admin), library: Library = Depends(get_library)):
    return _loans_out(library, library.loans.overdue_loans())


@app.get("/loans/upcoming", response_model=List[LoanOut])
def upcoming_due_loans(
    days: int = Query(3, ge=0, le=60),
    current: User = Depends(require_admin),
    library: Library = Depends(get_library),
):
    return _loans_out(library, library.loans.upcoming_due_loans(days))


@app.get("/loans/{loan_id}", response_model=LoanOut)
def get_loan(loan_id: str, current: User = Depends(get_current_user), library: Library = Depends(get_library)):
    return LoanOut.from_domain(_own_loan(library, loan_id, current), library.time.current_date())


@app.post("/loans/{loan_id}/return", response_model=ReturnOut)
def return_loan(loan_id: str, current: User = Depends(get_current_user), library: Library = Depends(get_library)):
    _own_loan(library, loan_id, current)
    return _return_out(library, library.loans.return_book(loan_id))


@app.post("/loans/{loan_id}/extend", response_model=LoanOut)
def extend_loan(
    loan_id: str,
    payload: ExtendRequest,
    current: User = Depends(get_current_user),
    library: Library = Depends(get_library),
):
    _own_loan(library, loan_id, current)
    loan = library.loans.extend_loan(loan_id, payload.days)
    return LoanOut.from_domain(loan, library.time.current_date())


@app.post("/loans/{loan_id}/cancel", response_model=LoanOut)
def cancel_loan(loan_id: str, current: User = Depends(get_current_user), library: Library = Depends(get_library)):
    _own_loan(library, loan_id, current)
    loan = library.loans.cancel_loan(loan_id)
    return LoanOut.from_domain(loan, library.time.current_date())


# Returns
@app.post("/returns", response_model=List[ReturnOut])
def return_loans(
    payload: ReturnRequest,
    current: User = Depends(get_current_user),
    library: Library = Depends(get_library),
):
    for loan_id in payload.loan_ids:
        _own_loan(library, loan_id, current)
    return [_return_out(library, r) for r in library.loans.return_books(payload.loan_ids)]


@app.get("/returns/statistics", response_model=ReturnStatisticsOut)
def return_statistics(
    start: date,
    end: date,
    current: User = Depends(require_admin),
    library: Library = Depends(get_library),
):
    return ReturnStatisticsOut.from_domain(library.returns.for_period(start, end))


@app.get("/returns/statistics/today", response_model=ReturnStatisticsOut)
def return_statistics_today(current: User = Depends(require_admin), library: Library = Depends(get_library)):
    return ReturnStatisticsOut.from_domain(library.returns.today())


@app.get("/returns/statistics/week", response_model=ReturnStatisticsOut)
def return_statistics_week(current: User = Depends(require_admin), library: Library = Depends(get_library)):
    return ReturnStatisticsOut.from_domain(library.returns.this_week())


@app.get("/returns/statistics/month", response_model=ReturnStatisticsOut)
def return_statistics_month(current: User = Depends(require_admin), library: Library = Depends(get_library)):
    return ReturnStatisticsOut.from_domain(library.returns.this_month())


@app.get("/returns/dashboard", response_model=DashboardOut)
def return_dashboard(current: User = Depends(require_admin), library: Library = Depends(get_library)):
    data = library.returns.dashboard()
    return DashboardOut(
        today=ReturnStatisticsOut.from_domain(data["today"]),
        week=ReturnStatisticsOut.from_domain(data["week"]),
        month=ReturnStatisticsOut.from_domain(data["month"]),
        active_loans=data["active_loans"],
        overdue_loans=data["overdue_loans"],
    )


# Users (admin)
@app.get("/users", response_model=UserPage)
def list_users(
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    current: User = Depends(require_admin),
    library: Library = Depends(get_library),
):
    result = library.users.list(page, size)
    return UserPage(
        items=[UserOut.from_domain(u) for u in result.items],
        total=result.total,
        page=result.page,
        size=result.size,
    )


@app.get("/users/{user_id}", response_model=UserOut)
def get_user(user_id: str, current: User = Depends(require_admin), library: Library = Depends(get_library)):
    return UserOut.from_domain(library.users.get(user_id))


@app.post("/users/{user_id}/activate", response_model=UserOut)
def activate_user(user_id: str, current: User = Depends(require_admin), library: Library = Depends(get_library)):
    return UserOut.from_domain(library.users.activate(user_id))


@app.post("/users/{user_id}/deactivate", response_model=UserOut)
def deactivate_user(user_id: str, current: User = Depends(require_admin), library: Library = Depends(get_library)):
    return UserOut.from_domain(library.users.deactivate(user_id))


@app.put("/users/{user_id}/role", response_model=UserOut)
def change_user_role(
    user_id: str,
    payload: RoleChangeRequest,
    current: User = Depends(require_admin),
    library: Library = Depends(get_library),
):
    return UserOut.from_domain(library.users.change_role(user_id, payload.role))


@app.get("/users/{user_id}/loans", response_model=List[LoanOut])
def user_loans(
    user_id: str,
    status: Optional[str] = None,
    current: User = Depends(require_admin),
    library: Library = Depends(get_library),
):
    return _loans_out(library, library.loans.user_loans(user_id, status))


@app.get("/users/{user_id}/books", response_model=List[BookOut])
def user_registered_books(user_id: str, current: User = Depends(require_admin), library: Library = Depends(get_library)):
    return [BookOut.from_domain(b) for b in library.books.books_registered_by(user_id)]


@app.get("/users/{user_id}/statistics", response_model=UserLoanStatistics)
def user_statistics(user_id: str, current: User = Depends(require_admin), library: Library = Depends(get_library)):
    library.users.get(user_id)
    return library.returns.for_user(user_id)


# Reminder sweep, on demand
@app.post("/admin/reminders/run", response_model=ReminderOut)
def run_reminders(current: User = Depends(require_admin), library: Library = Depends(get_library)):
    report = library.reminders.run()
    return ReminderOut(due_soon=_loans_out(library, report.due_soon), overdue=_loans_out(library, report.overdue))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
