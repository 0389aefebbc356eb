"""
Lending rules that span more than one entity.

LoanPolicy makes decisions only: callers read the counts from the
repositories and hand them in, so every rule can be exercised without a
database. A rejected rule raises LoanPolicyViolation with a stable code.
"""
import calendar
from datetime import date, timedelta
from typing import Optional, Sequence

from config import LoanPolicyConfig
from domain import Book, BookLoan, BookType, LoanPeriod, User
from errors import LoanPolicyViolation


def months_before(day: date, months: int) -> date:
    year, month = divmod(day.year * 12 + (day.month - 1) - months, 12)
    month += 1
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last))


class LoanPolicy:
    def __init__(self, config: Optional[LoanPolicyConfig] = None):
        self.config = config or LoanPolicyConfig()

    # ---- borrowing

    def check_request(self, book_ids: Sequence[str]) -> None:
        if not book_ids:
            raise LoanPolicyViolation("Select at least one book to borrow", "EMPTY_REQUEST")
        if len(book_ids) > self.config.max_books_per_request:
            raise LoanPolicyViolation(
                f"At most {self.config.max_books_per_request} books can be borrowed in one request",
                "TOO_MANY_BOOKS",
            )
        seen = set()
        for book_id in book_ids:
            if book_id in seen:
                raise LoanPolicyViolation(
                    f"Book {book_id} appears more than once in the request", "DUPLICATE_BOOK"
                )
            seen.add(book_id)

    def check_user(
        self,
        user: User,
        requested: int,
        active_count: int,
        today_count: int,
        overdue_count: int,
        recent_overdue_returns: int,
    ) -> None:
        cfg = self.config
        if not user.is_active():
            raise LoanPolicyViolation("Inactive users cannot borrow books", "USER_INACTIVE")
        if active_count + requested > cfg.max_loans_per_user:
            raise LoanPolicyViolation(
                f"Loan limit reached: {active_count} active, at most {cfg.max_loans_per_user} allowed",
                "MAX_LOANS_EXCEEDED",
            )
        if today_count + requested > cfg.max_daily_loans_per_user:
            raise LoanPolicyViolation(
                f"Daily limit reached: at most {cfg.max_daily_loans_per_user} loans per day",
                "DAILY_LIMIT_EXCEEDED",
            )
        if overdue_count > 0:
            raise LoanPolicyViolation(
                f"Return {overdue_count} overdue loan(s) before borrowing again", "OVERDUE_LOANS"
            )
        if recent_overdue_returns >= cfg.blacklist_overdue_threshold:
            raise LoanPolicyViolation(
                f"Borrowing suspended: {recent_overdue_returns} late returns in the last "
                f"{cfg.blacklist_window_months} months",
                "FREQUENT_OVERDUE",
            )

    def check_book(self, book: Book, quantity: int) -> None:
        if book.type == BookType.REFERENCE:
            raise LoanPolicyViolation(f"Reference book '{book.title}' cannot be borrowed", "REFERENCE_BOOK")
        if quantity > self.config.max_quantity_per_loan:
            raise LoanPolicyViolation(
                f"At most {self.config.max_quantity_per_loan} copies per loan", "QUANTITY_EXCEEDED"
            )
        if not book.is_available():
            raise LoanPolicyViolation(
                f"Book '{book.title}' is not available ({book.status.value})", "BOOK_UNAVAILABLE"
            )
        if not book.quantity.has_stock(quantity):
            raise LoanPolicyViolation(
                f"Only {book.quantity} copies of '{book.title}' left, {quantity} requested",
                "INSUFFICIENT_STOCK",
            )

    def check_loan_days(self, days: int) -> None:
        if days < 1 or days > self.config.max_loan_days:
            raise LoanPolicyViolation(
                f"Loan length must be between 1 and {self.config.max_loan_days} days", "INVALID_LOAN_DAYS"
            )

    def loan_period(self, today: date, loan_days: Optional[int] = None, due_date: Optional[date] = None) -> LoanPeriod:
        """Period for a new loan starting today, from either a length or an explicit due date."""
        if due_date is not None:
            days = (due_date - today).days
        else:
            days = loan_days if loan_days is not None else self.config.default_loan_days
        self.check_loan_days(days)
        return LoanPeriod.of(today, today + timedelta(days=days))

    def blacklist_since(self, today: date) -> date:
        return months_before(today, self.config.blacklist_window_months)

    # ---- changes to an existing loan

    def check_extension(self, loan: BookLoan, days: int, today: date) -> None:
        cfg = self.config
        if not loan.is_active():
            raise LoanPolicyViolation("Only active loans can be extended", "LOAN_NOT_ACTIVE")
        if loan.is_overdue(today):
            raise LoanPolicyViolation("Overdue loans cannot be extended", "LOAN_OVERDUE")
        if days < 1 or days > cfg.max_extension_days:
            raise LoanPolicyViolation(
                f"Extension must be between 1 and {cfg.max_extension_days} days", "EXTENSION_TOO_LONG"
            )
        total = loan.loan_period.total_loan_days() + days
        if total > cfg.max_loan_days:
            raise LoanPolicyViolation(
                f"Total loan period would be {total} days, at most {cfg.max_loan_days} allowed",
                "TOTAL_PERIOD_EXCEEDED",
            )
        if loan.extension_count >= cfg.max_extensions_per_loan:
            raise LoanPolicyViolation(
                f"A loan can be extended at most {cfg.max_extensions_per_loan} times", "EXTENSION_LIMIT"
            )

    def check_cancellation(self, loan: BookLoan, today: date) -> None:
        if not loan.is_active():
            raise LoanPolicyViolation("Only active loans can be cancelled", "LOAN_NOT_ACTIVE")
        if self.config.cancel_same_day_only and loan.loan_period.loan_date != today:
            raise LoanPolicyViolation("Loans can only be cancelled on the day they were made", "CANCEL_WINDOW_CLOSED")
