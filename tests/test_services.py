"""
Tests for the use cases in services.py
"""
from datetime import date, timedelta

import pytest
from bson import ObjectId
from pymongo.errors import OperationFailure

from domain import BookStatus, LoanStatus, Role
from errors import (
    AuthenticationError,
    ConcurrencyConflictError,
    DuplicateError,
    InvalidArgumentError,
    InvalidStateError,
    LoanPolicyViolation,
    NotFoundError,
)
from services import UnitOfWork


def stock(library, book):
    return library.book_repo.find_by_id(book.id).quantity.value


# ---- users

def test_register_and_authenticate(library, clock):
    user = library.users.register("Reader", "Reader@Example.com", "secret")
    assert user.role == Role.USER

    with pytest.raises(DuplicateError):
        library.users.register("Other", "reader@example.com", "secret")

    logged_in = library.users.authenticate("reader@example.com", "secret")
    assert logged_in.last_login_at == clock.current_datetime()

    with pytest.raises(AuthenticationError):
        library.users.authenticate("reader@example.com", "wrong")


def test_inactive_user_cannot_log_in(library, member):
    library.users.deactivate(member.id)
    with pytest.raises(AuthenticationError) as excinfo:
        library.users.authenticate(member.email, "secret")
    assert excinfo.value.code == "ACCOUNT_INACTIVE"


def test_ensure_default_admin_is_idempotent(library):
    assert library.users.ensure_default_admin("", "") is None
    first = library.users.ensure_default_admin("root@example.com", "secret")
    second = library.users.ensure_default_admin("root@example.com", "secret")
    assert first.is_admin()
    assert first.id == second.id
    assert library.users.list().total == 1


# ---- catalog

def test_registering_same_book_adds_stock(library, add_book):
    first = add_book("Dune", 3)
    again = add_book(" Dune ", 2, language="english", type="fiction")
    assert again.id == first.id
    assert stock(library, first) == 5
    assert library.books.search().total == 1


def test_update_rejects_collision(library, add_book):
    add_book("Dune", 1)
    other = add_book("Cosmos", 1)
    with pytest.raises(DuplicateError):
        library.books.update(other.id, title="Dune")
    updated = library.books.update(other.id, title="Cosmos 2nd ed.", quantity=7)
    assert updated.title.value == "Cosmos 2nd ed."
    assert updated.quantity.value == 7


def test_delete_book_with_loans_is_rejected(library, add_book, member):
    book = add_book()
    loan = library.loans.borrow_single(member.id, book.id)
    with pytest.raises(InvalidStateError):
        library.books.delete(book.id)

    library.loans.return_book(loan.id)
    with pytest.raises(InvalidStateError):
        library.books.delete(book.id)

    # the history still resolves
    history = library.loans.return_history(member.id)
    assert [found.id for found in history] == [loan.id]
    assert library.returns.for_user(member.id)["total_returns"] == 1


def test_delete_never_borrowed_book(library, add_book):
    book = add_book()
    library.books.delete(book.id)
    with pytest.raises(NotFoundError):
        library.books.get(book.id)


def test_register_retries_with_a_fresh_book_after_an_aborted_insert(library, db, add_book, monkeypatch):
    """The first insert is rolled back and reported as a conflict; the retry inserts again"""
    original_save = library.book_repo.save
    aborted = []

    def aborting_save(entity, session=None):
        saved = original_save(entity, session)
        if not aborted:
            aborted.append(entity.id)
            db["book"].delete_one({"_id": ObjectId(entity.id)})
            raise ConcurrencyConflictError("transaction aborted")
        return saved

    monkeypatch.setattr(library.book_repo, "save", aborting_save)
    book = add_book("Dune", 3)

    assert aborted and book.id != aborted[0]
    assert stock(library, book) == 3
    assert library.books.search().total == 1


def test_catalog_statistics_and_options(library, add_book):
    add_book("Dune", 3)
    add_book("Cosmos", 2, type="SCIENCE")
    stats = library.books.statistics()
    assert stats["total_books"] == 2
    assert stats["total_quantity"] == 5
    assert stats["by_type"] == {"FICTION": 1, "SCIENCE": 1}
    assert "REFERENCE" in library.books.options()["types"]


def test_available_and_borrowed_lists(library, add_book, member):
    single = add_book("Dune", 1)
    add_book("Cosmos", 2)
    library.loans.borrow_single(member.id, single.id)
    assert [b.title.value for b in library.books.available_books()] == ["Cosmos"]
    assert [b.id for b in library.books.borrowed_books()] == [single.id]


# ---- borrowing

def test_borrow_books_decrements_stock_once_per_book(library, add_book, member, clock):
    a, b = add_book("Dune", 2), add_book("Cosmos", 1)
    loans = library.loans.borrow_books(member.id, [a.id, b.id])

    assert len(loans) == 2
    assert all(loan.loan_period.due_date == clock.current_date() + timedelta(days=14) for loan in loans)
    assert stock(library, a) == 1
    assert stock(library, b) == 0
    assert library.book_repo.find_by_id(b.id).status == BookStatus.BORROWED


def test_duplicate_book_in_request_is_rejected_before_stock_changes(library, add_book, member):
    book = add_book("Dune", 3)
    with pytest.raises(LoanPolicyViolation) as excinfo:
        library.loans.borrow_books(member.id, [book.id, book.id])
    assert excinfo.value.code == "DUPLICATE_BOOK"
    assert stock(library, book) == 3
    assert library.loan_repo.count() == 0


def test_sixth_active_loan_is_rejected(library, add_book, member, clock):
    books = [add_book(f"Book {i}", 2) for i in range(6)]
    library.loans.borrow_books(member.id, [b.id for b in books[:3]])
    clock.advance(days=1)
    library.loans.borrow_books(member.id, [b.id for b in books[3:5]])
    clock.advance(days=1)

    with pytest.raises(LoanPolicyViolation) as excinfo:
        library.loans.borrow_single(member.id, books[5].id)
    assert excinfo.value.code == "MAX_LOANS_EXCEEDED"
    assert stock(library, books[5]) == 2


def test_daily_limit(library, add_book, member):
    books = [add_book(f"Book {i}", 1) for i in range(4)]
    library.loans.borrow_books(member.id, [b.id for b in books[:3]])
    with pytest.raises(LoanPolicyViolation) as excinfo:
        library.loans.borrow_single(member.id, books[3].id)
    assert excinfo.value.code == "DAILY_LIMIT_EXCEEDED"


def test_overdue_loan_blocks_new_borrowing(library, add_book, member, clock):
    first, second = add_book("Dune", 1), add_book("Cosmos", 1)
    library.loans.borrow_single(member.id, first.id, loan_days=3)
    clock.advance(days=4)
    with pytest.raises(LoanPolicyViolation) as excinfo:
        library.loans.borrow_single(member.id, second.id)
    assert excinfo.value.code == "OVERDUE_LOANS"


def test_frequent_late_returns_block_borrowing(library, db, add_book, member, clock):
    book = add_book("Dune", 1)
    for i in range(5):
        db["bookloan"].insert_one({
            "book_id": book.id,
            "user_id": member.id,
            "quantity": 1,
            "loan_date": "2023-11-01",
            "due_date": "2023-11-15",
            "status": LoanStatus.RETURNED.value,
            "returned_on": (date(2023, 11, 20) + timedelta(days=i)).isoformat(),
            "returned_late": True,
            "version": 1,
        })
    with pytest.raises(LoanPolicyViolation) as excinfo:
        library.loans.borrow_single(member.id, book.id)
    assert excinfo.value.code == "FREQUENT_OVERDUE"

    clock.set(date(2024, 3, 1))
    library.loans.borrow_single(member.id, book.id)


def test_reference_books_never_circulate(library, add_book, member):
    book = add_book("Atlas", 2, type="REFERENCE")
    with pytest.raises(LoanPolicyViolation) as excinfo:
        library.loans.borrow_single(member.id, book.id)
    assert excinfo.value.code == "REFERENCE_BOOK"


def test_borrow_single_quantity_and_length(library, add_book, member, clock):
    book = add_book("Dune", 5)
    with pytest.raises(InvalidArgumentError):
        library.loans.borrow_single(member.id, book.id, quantity=0)
    with pytest.raises(LoanPolicyViolation):
        library.loans.borrow_single(member.id, book.id, loan_days=45)

    loan = library.loans.borrow_single(member.id, book.id, quantity=2, loan_days=7)
    assert loan.quantity.value == 2
    assert loan.loan_period.due_date == clock.current_date() + timedelta(days=7)
    assert stock(library, book) == 3


def test_unknown_ids_are_not_found(library, add_book, member):
    with pytest.raises(NotFoundError):
        library.loans.borrow_single("0123456789abcdef01234567", add_book().id)
    with pytest.raises(NotFoundError):
        library.loans.borrow_single(member.id, "0123456789abcdef01234567")
    with pytest.raises(NotFoundError):
        library.loans.return_book("0123456789abcdef01234567")


# ---- returning

def test_return_restores_stock_and_reports_lateness(library, add_book, member, clock):
    book = add_book("Dune", 1)
    loan = library.loans.borrow_single(member.id, book.id, loan_days=5)
    clock.advance(days=7)

    receipt = library.loans.return_book(loan.id)
    assert receipt.was_overdue
    assert receipt.overdue_days == 2
    assert receipt.loan.status == LoanStatus.RETURNED
    assert stock(library, book) == 1
    assert library.book_repo.find_by_id(book.id).status == BookStatus.AVAILABLE

    with pytest.raises(InvalidStateError):
        library.loans.return_book(loan.id)
    assert stock(library, book) == 1


def test_bulk_return_is_all_or_nothing(library, add_book, member):
    a, b = add_book("Dune", 1), add_book("Cosmos", 1)
    first, second = library.loans.borrow_books(member.id, [a.id, b.id])
    library.loans.return_book(second.id)

    with pytest.raises(InvalidStateError):
        library.loans.return_books([first.id, second.id])
    assert library.loans.get_loan(first.id).is_active()
    assert stock(library, a) == 0


def test_bulk_return_of_copies_from_the_same_book(library, add_book, member, clock):
    book = add_book("Dune", 2)
    first = library.loans.borrow_single(member.id, book.id)
    clock.advance(days=1)
    second = library.loans.borrow_single(member.id, book.id)

    receipts = library.loans.return_books([first.id, second.id])
    assert len(receipts) == 2
    assert stock(library, book) == 2


# ---- extend / cancel

def test_extension_scenario_through_the_service(library, add_book, member, clock):
    clock.set(date(2024, 1, 1))
    loan = library.loans.borrow_single(member.id, add_book().id, loan_days=14)
    clock.set(date(2024, 1, 10))

    extended = library.loans.extend_loan(loan.id, 10)
    assert extended.loan_period.due_date == date(2024, 1, 25)
    assert extended.loan_period.total_loan_days() == 24

    with pytest.raises(LoanPolicyViolation) as excinfo:
        library.loans.extend_loan(loan.id, 10)
    assert excinfo.value.code == "TOTAL_PERIOD_EXCEEDED"
    assert library.loans.get_loan(loan.id).loan_period.due_date == date(2024, 1, 25)


def test_extension_count_limit(library, add_book, member):
    loan = library.loans.borrow_single(member.id, add_book().id, loan_days=7)
    library.loans.extend_loan(loan.id, 3)
    library.loans.extend_loan(loan.id, 3)
    with pytest.raises(LoanPolicyViolation) as excinfo:
        library.loans.extend_loan(loan.id, 3)
    assert excinfo.value.code == "EXTENSION_LIMIT"
    assert library.loans.get_loan(loan.id).extension_count == 2


def test_cancel_only_on_the_loan_day(library, add_book, member, clock):
    book = add_book("Dune", 3)
    today_loan = library.loans.borrow_single(member.id, book.id)
    assert stock(library, book) == 2
    cancelled = library.loans.cancel_loan(today_loan.id)
    assert cancelled.status == LoanStatus.CANCELLED
    assert stock(library, book) == 3
    assert library.loan_repo.count_active_by_book_id(book.id) == 0

    old_loan = library.loans.borrow_single(member.id, book.id)
    clock.advance(days=1)
    with pytest.raises(LoanPolicyViolation) as excinfo:
        library.loans.cancel_loan(old_loan.id)
    assert excinfo.value.code == "CANCEL_WINDOW_CLOSED"


# ---- queries

def test_loan_queries(library, add_book, member, clock):
    a, b = add_book("Dune", 1), add_book("Cosmos", 1)
    soon = library.loans.borrow_single(member.id, a.id, loan_days=2)
    later = library.loans.borrow_single(member.id, b.id, loan_days=20)

    assert [found.id for found in library.loans.upcoming_due_loans(3)] == [soon.id]
    assert {found.id for found in library.loans.active_loans()} == {soon.id, later.id}
    assert {found.id for found in library.loans.returnable_loans(member.id)} == {soon.id, later.id}

    clock.advance(days=3)
    assert [found.id for found in library.loans.overdue_loans()] == [soon.id]

    library.loans.return_book(soon.id)
    assert [found.id for found in library.loans.return_history(member.id)] == [soon.id]
    assert [found.id for found in library.loans.user_loans(member.id, "active")] == [later.id]

    page = library.loans.list_loans(page=0, size=1)
    assert page.total == 2 and len(page.items) == 1


# ---- statistics and reminders

def test_return_statistics(library, add_book, member, clock):
    clock.set(date(2024, 1, 8))  # Monday
    a, b = add_book("Dune", 1), add_book("Cosmos", 1)
    late = library.loans.borrow_single(member.id, a.id, loan_days=1)
    on_time = library.loans.borrow_single(member.id, b.id, loan_days=10)
    clock.set(date(2024, 1, 10))
    library.loans.return_book(late.id)
    library.loans.return_book(on_time.id)

    today = library.returns.today()
    assert (today.total_returns, today.overdue_returns, today.overdue_rate) == (2, 1, 50.0)
    assert library.returns.this_week().start == date(2024, 1, 8)
    assert library.returns.this_month().start == date(2024, 1, 1)
    assert library.returns.for_period(date(2024, 1, 11), date(2024, 1, 31)).total_returns == 0

    dashboard = library.returns.dashboard()
    assert dashboard["active_loans"] == 0

    per_user = library.returns.for_user(member.id)
    assert per_user["total_returns"] == 2
    assert per_user["overdue_returns"] == 1


def test_reminder_sweep_is_read_only(library, db, add_book, member, clock):
    a, b = add_book("Dune", 1), add_book("Cosmos", 1)
    soon = library.loans.borrow_single(member.id, a.id, loan_days=2)
    library.loans.borrow_single(member.id, b.id, loan_days=20)
    before = list(db["bookloan"].find({})) + list(db["book"].find({}))

    report = library.reminders.run()
    assert [found.id for found in report.due_soon] == [soon.id]
    assert report.overdue == []

    clock.advance(days=5)
    report = library.reminders.run()
    assert [found.id for found in report.overdue] == [soon.id]

    after = list(db["bookloan"].find({})) + list(db["book"].find({}))
    assert before == after


# ---- concurrency

def test_unit_of_work_retries_then_gives_up(db):
    calls = []

    def always_conflicts(session):
        calls.append(session)
        raise ConcurrencyConflictError("stale")

    with pytest.raises(ConcurrencyConflictError):
        UnitOfWork(db, transactions=False, retries=2).run(always_conflicts, "test")
    assert len(calls) == 3


def test_unit_of_work_retries_transient_transaction_errors(db):
    calls = []

    def write_conflict_once(session):
        calls.append(session)
        if len(calls) == 1:
            raise OperationFailure(
                "WriteConflict", code=112, details={"errorLabels": ["TransientTransactionError"]}
            )
        return "done"

    assert UnitOfWork(db, transactions=False, retries=2).run(write_conflict_once, "test") == "done"
    assert len(calls) == 2


def test_unit_of_work_does_not_retry_other_database_errors(db):
    calls = []

    def fails(session):
        calls.append(session)
        raise OperationFailure("not authorized", code=13)

    with pytest.raises(OperationFailure):
        UnitOfWork(db, transactions=False, retries=2).run(fails, "test")
    assert len(calls) == 1


def test_borrow_retries_after_a_concurrent_stock_change(library, db, add_book, member, monkeypatch):
    """Another writer bumps the book between our read and our write; the retry re-reads and succeeds"""
    book = add_book("Dune", 2)
    original_save = library.book_repo.save
    interfered = []

    def racing_save(entity, session=None):
        if not interfered:
            interfered.append(entity.id)
            db["book"].update_one({"_id": ObjectId(entity.id)}, {"$inc": {"quantity": -1, "version": 1}})
        return original_save(entity, session)

    monkeypatch.setattr(library.book_repo, "save", racing_save)
    loan = library.loans.borrow_single(member.id, book.id)

    assert loan.id
    assert stock(library, book) == 0
    assert library.loan_repo.count() == 1
