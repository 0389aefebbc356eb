"""
Tests for the lending rules in policy.py (no database involved)
"""
from datetime import date, timedelta

import pytest

from config import LoanPolicyConfig
from domain import Book, BookLoan, BookStatus, LoanPeriod, User, UserStatus
from errors import LoanPolicyViolation
from policy import LoanPolicy, months_before


@pytest.fixture
def policy():
    return LoanPolicy(LoanPolicyConfig())


@pytest.fixture
def user():
    return User(id="u1", name="Reader", email="reader@example.com", password_hash="x")


def make_book(user, type="FICTION", quantity=3):
    return Book.create("Dune", "ENGLISH", type, quantity, user)


def rejected(code, fn, *args, **kwargs):
    with pytest.raises(LoanPolicyViolation) as excinfo:
        fn(*args, **kwargs)
    assert excinfo.value.code == code


def test_request_shape(policy):
    rejected("EMPTY_REQUEST", policy.check_request, [])
    rejected("TOO_MANY_BOOKS", policy.check_request, ["a", "b", "c", "d", "e", "f"])
    rejected("DUPLICATE_BOOK", policy.check_request, ["b1", "b1"])
    policy.check_request(["a", "b", "c", "d", "e"])


def test_user_limits(policy, user):
    counts = dict(active_count=0, today_count=0, overdue_count=0, recent_overdue_returns=0)
    policy.check_user(user, 1, **counts)

    rejected("MAX_LOANS_EXCEEDED", policy.check_user, user, 1, **{**counts, "active_count": 5})
    rejected("DAILY_LIMIT_EXCEEDED", policy.check_user, user, 1, **{**counts, "today_count": 3})
    rejected("OVERDUE_LOANS", policy.check_user, user, 1, **{**counts, "overdue_count": 1})
    rejected("FREQUENT_OVERDUE", policy.check_user, user, 1, **{**counts, "recent_overdue_returns": 5})
    policy.check_user(user, 1, **{**counts, "recent_overdue_returns": 4})


def test_inactive_user_is_rejected(policy, user):
    user.status = UserStatus.INACTIVE
    rejected("USER_INACTIVE", policy.check_user, user, 1, 0, 0, 0, 0)


def test_book_rules(policy, user):
    rejected("REFERENCE_BOOK", policy.check_book, make_book(user, type="REFERENCE"), 1)
    rejected("QUANTITY_EXCEEDED", policy.check_book, make_book(user, quantity=10), 6)
    rejected("INSUFFICIENT_STOCK", policy.check_book, make_book(user, quantity=1), 2)

    lost = make_book(user)
    lost.change_status(BookStatus.LOST)
    rejected("BOOK_UNAVAILABLE", policy.check_book, lost, 1)

    policy.check_book(make_book(user), 3)


def test_loan_period_length(policy):
    today = date(2024, 1, 1)
    assert policy.loan_period(today).due_date == date(2024, 1, 15)
    assert policy.loan_period(today, loan_days=30).total_loan_days() == 30
    assert policy.loan_period(today, due_date=date(2024, 1, 5)).total_loan_days() == 4
    rejected("INVALID_LOAN_DAYS", policy.loan_period, today, loan_days=31)
    rejected("INVALID_LOAN_DAYS", policy.loan_period, today, due_date=today)


def test_extension_total_period_scenario(policy, user):
    """Loan 2024-01-01..01-15 extended by 10 on 01-10 is 24 days; a further 10 would be 34"""
    book = make_book(user)
    loan = BookLoan.create(book, user, 1, LoanPeriod.of(date(2024, 1, 1), date(2024, 1, 15)))
    loan.execute_loan()
    on = date(2024, 1, 10)

    policy.check_extension(loan, 10, on)
    loan.extend_loan(10, on)
    assert loan.loan_period.due_date == date(2024, 1, 25)
    assert loan.loan_period.total_loan_days() == 24

    rejected("TOTAL_PERIOD_EXCEEDED", policy.check_extension, loan, 10, on)
    assert loan.loan_period.due_date == date(2024, 1, 25)


def test_extension_rules(policy, user):
    today = date(2024, 1, 10)
    loan = BookLoan.create(make_book(user), user, 1, LoanPeriod.of(today, today + timedelta(days=7)))
    loan.execute_loan()

    rejected("EXTENSION_TOO_LONG", policy.check_extension, loan, 15, today)
    rejected("EXTENSION_TOO_LONG", policy.check_extension, loan, 0, today)
    rejected("LOAN_OVERDUE", policy.check_extension, loan, 1, today + timedelta(days=8))

    loan.extend_loan(3, today)
    loan.extend_loan(3, today)
    rejected("EXTENSION_LIMIT", policy.check_extension, loan, 3, today)

    loan.cancel_loan()
    rejected("LOAN_NOT_ACTIVE", policy.check_extension, loan, 3, today)


def test_cancellation_only_on_loan_day(policy, user):
    today = date(2024, 1, 10)
    loan = BookLoan.create(make_book(user), user, 1, LoanPeriod.create_default(today))
    policy.check_cancellation(loan, today)
    rejected("CANCEL_WINDOW_CLOSED", policy.check_cancellation, loan, today + timedelta(days=1))

    relaxed = LoanPolicy(LoanPolicyConfig(cancel_same_day_only=False))
    relaxed.check_cancellation(loan, today + timedelta(days=1))


def test_limits_come_from_config(user):
    strict = LoanPolicy(LoanPolicyConfig(max_loans_per_user=1))
    rejected("MAX_LOANS_EXCEEDED", strict.check_user, user, 1, 1, 0, 0, 0)


@pytest.mark.parametrize("day, months, expected", [
    (date(2024, 5, 31), 3, date(2024, 2, 29)),
    (date(2024, 1, 15), 3, date(2023, 10, 15)),
    (date(2024, 3, 1), 12, date(2023, 3, 1)),
])
def test_months_before(day, months, expected):
    assert months_before(day, months) == expected
