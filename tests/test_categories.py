from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from auth import Principal
from database import Base
from invalidation import ViewInvalidator
from models import Category, User
from results import Err, ErrorKind, Ok, ValidationErr
from services import CategoryService, ExpenseService, NotFound, Unauthorized


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_principal(session, email: str) -> Principal:
    user = User(email=email, password_hash="unused")
    session.add(user)
    session.commit()
    return Principal.from_user(user)


def add_expense(session, principal, category, amount="10.00", when=None):
    result = ExpenseService(session).create(
        principal,
        {
            "amount": amount,
            "description": "Lunch",
            "category_id": category.id,
            "date": when or datetime(2024, 2, 1, 12, 0),
        },
    )
    assert isinstance(result, Ok), result
    return result.data


def test_create_category_scoped_per_user() -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    bob = make_principal(session, "bob@example.com")
    invalidator = ViewInvalidator()
    categories = CategoryService(session, invalidator)

    created = categories.create(ana, {"name": "Food", "color": "#EF4444", "budget": 500})

    assert isinstance(created, Ok)
    assert created.data.name == "Food"
    assert created.data.color == "#EF4444"
    assert created.data.icon is None
    assert created.data.budget == Decimal("500.00")
    assert invalidator.stale == ["dashboard", "categories"]

    duplicate = categories.create(ana, {"name": "Food"})
    assert duplicate == ValidationErr(
        {"name": ["A category with this name already exists"]}
    )

    assert isinstance(categories.create(bob, {"name": "Food"}), Ok)
    assert session.scalar(select(func.count(Category.id))) == 2


def test_create_category_requires_principal_and_valid_input() -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    categories = CategoryService(session)

    denied = categories.create(None, {"name": "Food"})
    assert denied == Err(
        ErrorKind.unauthorized, "You must be logged in to create categories"
    )

    invalid = categories.create(ana, {"name": "F", "color": "blue"})
    assert isinstance(invalid, ValidationErr)
    assert set(invalid.fields) == {"name", "color"}
    assert session.scalar(select(func.count(Category.id))) == 0
    assert categories.invalidator.stale == []


def test_update_category_changes_only_supplied_fields() -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    categories = CategoryService(session)
    food = categories.create(
        ana, {"name": "Food", "color": "#EF4444", "icon": "F", "budget": "200"}
    ).data
    categories.create(ana, {"name": "Travel"})

    result = categories.update(ana, food.id, {"name": "Groceries", "budget": None})

    assert isinstance(result, Ok)
    assert result.data.name == "Groceries"
    assert result.data.budget is None
    assert result.data.color == "#EF4444"
    assert result.data.icon == "F"

    clash = categories.update(ana, food.id, {"name": "Travel"})
    assert clash == ValidationErr(
        {"name": ["A category with this name already exists"]}
    )

    # Renaming to its own name is not a clash.
    assert isinstance(categories.update(ana, food.id, {"name": "Groceries"}), Ok)


def test_update_category_of_other_user_is_not_found() -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    bob = make_principal(session, "bob@example.com")
    categories = CategoryService(session)
    food = categories.create(ana, {"name": "Food"}).data

    result = categories.update(bob, food.id, {"name": "Mine"})

    assert result == Err(ErrorKind.not_found, "Category not found")
    session.refresh(food)
    assert food.name == "Food"


def test_delete_category_blocked_while_expenses_reference_it() -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    categories = CategoryService(session)
    food = categories.create(ana, {"name": "Food"}).data
    first = add_expense(session, ana, food)
    second = add_expense(session, ana, food)

    blocked = categories.delete(ana, food.id)

    assert isinstance(blocked, Err)
    assert blocked.kind == ErrorKind.conflict
    assert blocked.message == (
        "Cannot delete category with 2 expense(s). "
        "Please delete or reassign the expenses first."
    )

    expenses = ExpenseService(session)
    expenses.delete(ana, first.id)
    expenses.delete(ana, second.id)
    assert categories.delete(ana, food.id) == Ok()
    with pytest.raises(NotFound):
        categories.get(ana, food.id)
    assert categories.delete(ana, food.id) == Err(
        ErrorKind.not_found, "Category not found"
    )


def test_bulk_delete_categories_all_or_nothing() -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    bob = make_principal(session, "bob@example.com")
    categories = CategoryService(session)
    food = categories.create(ana, {"name": "Food"}).data
    fun = categories.create(ana, {"name": "Fun"}).data
    rent = categories.create(ana, {"name": "Rent"}).data
    bobs = categories.create(bob, {"name": "Bob's"}).data
    add_expense(session, ana, rent)

    blocked = categories.bulk_delete(ana, [food.id, rent.id])
    assert blocked == Err(ErrorKind.conflict, "Cannot delete 1 category with expenses")
    assert len(categories.list(ana)) == 3

    deleted = categories.bulk_delete(ana, [food.id, fun.id, bobs.id])
    assert deleted == Ok(count=2)
    assert [item.category.name for item in categories.list(ana)] == ["Rent"]
    assert [item.category.name for item in categories.list(bob)] == ["Bob's"]


def test_list_and_get_categories() -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    bob = make_principal(session, "bob@example.com")
    categories = CategoryService(session)
    travel = categories.create(ana, {"name": "Travel"}).data
    food = categories.create(ana, {"name": "Food"}).data
    for day in range(1, 13):
        add_expense(session, ana, food, when=datetime(2024, 1, day))
    add_expense(session, ana, travel)

    summaries = categories.list(ana)
    assert [(item.category.name, item.expense_count) for item in summaries] == [
        ("Food", 12),
        ("Travel", 1),
    ]

    detail = categories.get(ana, food.id)
    assert detail.expense_count == 12
    assert len(detail.recent_expenses) == 10
    assert detail.recent_expenses[0].date == datetime(2024, 1, 12)

    with pytest.raises(NotFound):
        categories.get(bob, food.id)
    with pytest.raises(Unauthorized):
        categories.list(None)
    assert categories.list(bob) == []


def test_category_stats_track_monthly_budget() -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    categories = CategoryService(session)
    food = categories.create(ana, {"name": "Food", "budget": "500"}).data
    fun = categories.create(ana, {"name": "Fun"}).data
    add_expense(session, ana, food, amount="100.00", when=datetime(2024, 2, 3))
    add_expense(session, ana, food, amount="50.00", when=datetime(2024, 1, 20))

    stats = categories.stats(ana, food.id, now=datetime(2024, 2, 20, 12, 0))

    assert stats.total_spent == Decimal("150.00")
    assert stats.monthly_spent == Decimal("100.00")
    assert stats.budget == Decimal("500.00")
    assert stats.budget_remaining == Decimal("400.00")
    assert stats.budget_percentage == pytest.approx(20.0)
    assert stats.expense_count == 2

    no_budget = categories.stats(ana, fun.id, now=datetime(2024, 2, 20))
    assert no_budget.total_spent == Decimal("0.00")
    assert no_budget.budget is None
    assert no_budget.budget_remaining is None
    assert no_budget.budget_percentage is None


def test_oversized_budget_is_a_field_error() -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    categories = CategoryService(session)

    result = categories.create(ana, {"name": "Food", "budget": "1e20"})

    assert result == ValidationErr({"budget": ["Budget is too large"]})
    assert session.scalar(select(func.count(Category.id))) == 0


def test_persistence_failure_keeps_previous_values(monkeypatch, caplog) -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    invalidator = ViewInvalidator()
    categories = CategoryService(session, invalidator)
    food = categories.create(ana, {"name": "Food"}).data
    invalidator.stale.clear()

    def failing_commit():
        raise OperationalError("UPDATE categories", {}, Exception("database is locked"))

    monkeypatch.setattr(session, "commit", failing_commit)
    updated = categories.update(ana, food.id, {"name": "Groceries"})
    created = categories.create(ana, {"name": "Travel"})
    monkeypatch.undo()

    assert updated == Err(
        ErrorKind.internal, "Failed to update category. Please try again."
    )
    assert created == Err(
        ErrorKind.internal, "Failed to create category. Please try again."
    )
    assert "update_category_failed" in caplog.text
    assert "create_category_failed" in caplog.text
    assert invalidator.stale == []
    assert [item.category.name for item in categories.list(ana)] == ["Food"]
