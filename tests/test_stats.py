from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from auth import Principal
from database import Base
from models import Category, Expense, User
from periods import StatsWindow, month_start, resolve_stats_window
from services import StatsService, Unauthorized, percentage_change

NOW = datetime(2024, 2, 20, 12, 0)


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


def make_category(session, principal: Principal, name: str, color: str = "#EF4444"):
    category = Category(user_id=principal.user_id, name=name, color=color)
    session.add(category)
    session.commit()
    return category


def add_expense(session, principal, category, cents: int, when: datetime) -> Expense:
    expense = Expense(
        user_id=principal.user_id,
        category_id=category.id,
        amount_cents=cents,
        description="Expense",
        date=when,
    )
    session.add(expense)
    session.commit()
    return expense


def test_month_window_starts_on_the_first() -> None:
    window = resolve_stats_window("month", now=NOW)

    assert window == StatsWindow("month", datetime(2024, 2, 1), NOW)
    assert window.days == 20
    assert window.previous_start == datetime(2024, 1, 12, 12, 0)
    assert resolve_stats_window(None, now=NOW).slug == "month"


def test_week_and_year_windows() -> None:
    week = resolve_stats_window("week", now=NOW)
    year = resolve_stats_window("year", now=NOW)

    assert week.start == datetime(2024, 2, 13)
    assert week.days == 8
    assert year.start == datetime(2024, 1, 1)
    assert year.end == NOW
    with pytest.raises(ValueError):
        resolve_stats_window("decade", now=NOW)


def test_window_at_period_boundary_counts_one_day() -> None:
    window = resolve_stats_window("month", now=datetime(2024, 3, 1))

    assert window.elapsed.total_seconds() == 0
    assert window.days == 1
    assert month_start(datetime(2024, 3, 31, 23, 59)) == datetime(2024, 3, 1)


def test_percentage_change() -> None:
    assert percentage_change(4550, 3000) == pytest.approx(51.6666, rel=1e-4)
    assert percentage_change(1500, 3000) == pytest.approx(-50.0)
    assert percentage_change(4550, 0) == 0.0


def test_expense_stats_for_current_month() -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    bob = make_principal(session, "bob@example.com")
    food = make_category(session, ana, "Food")
    travel = make_category(session, ana, "Travel", "#3B82F6")
    bobs = make_category(session, bob, "Food")
    add_expense(session, ana, food, 4550, datetime(2024, 2, 1))
    add_expense(session, ana, travel, 1200, datetime(2024, 2, 2))
    add_expense(session, ana, travel, 3800, datetime(2024, 2, 19))
    add_expense(session, ana, food, 3000, datetime(2024, 1, 20))
    add_expense(session, ana, food, 9999, datetime(2024, 1, 5))
    add_expense(session, bob, bobs, 70000, datetime(2024, 2, 10))

    stats = StatsService(session).expense_stats(ana, "month", now=NOW)

    assert stats.period == "month"
    assert stats.total == Decimal("95.50")
    assert stats.count == 3
    assert stats.average_per_day == pytest.approx(95.50 / 20)
    assert [(c.name, c.total, c.count) for c in stats.by_category] == [
        ("Travel", Decimal("50.00"), 2),
        ("Food", Decimal("45.50"), 1),
    ]
    assert stats.by_category[0].color == "#3B82F6"
    assert stats.previous_total == Decimal("30.00")
    assert stats.percentage_change == pytest.approx((9550 - 3000) / 3000 * 100)


def test_expense_stats_without_history() -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    food = make_category(session, ana, "Food")
    add_expense(session, ana, food, 4550, datetime(2024, 2, 1))

    stats = StatsService(session).expense_stats(ana, now=NOW)

    assert stats.previous_total == Decimal("0.00")
    assert stats.percentage_change == 0.0

    with pytest.raises(Unauthorized):
        StatsService(session).expense_stats(None, now=NOW)


def test_expenses_grouped_by_day() -> None:
    session = make_session()
    ana = make_principal(session, "ana@example.com")
    food = make_category(session, ana, "Food")
    add_expense(session, ana, food, 1200, datetime(2024, 2, 2, 18, 0))
    add_expense(session, ana, food, 4550, datetime(2024, 2, 1, 9, 0))
    add_expense(session, ana, food, 500, datetime(2024, 2, 1, 20, 0))
    add_expense(session, ana, food, 800, datetime(2024, 2, 5))

    buckets = StatsService(session).by_date_range(
        ana, datetime(2024, 2, 1), datetime(2024, 2, 2, 23, 59, 59)
    )

    assert [(b.date, b.total, len(b.expenses)) for b in buckets] == [
        (date(2024, 2, 1), Decimal("50.50"), 2),
        (date(2024, 2, 2), Decimal("12.00"), 1),
    ]
    assert StatsService(session).by_date_range(
        ana, datetime(2024, 3, 1), datetime(2024, 3, 31)
    ) == []
