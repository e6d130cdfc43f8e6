from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from auth import Principal
from invalidation import (
    CATEGORIES_VIEW,
    DASHBOARD_VIEW,
    EXPENSES_VIEW,
    ViewInvalidator,
)
from models import Category, Expense, amount_to_cents, cents_to_amount
from periods import month_start, resolve_stats_window
from results import Err, ErrorKind, Ok, Result, ValidationErr
from schemas import (
    BulkCategoryUpdate,
    BulkIds,
    CategoryCreate,
    CategoryUpdate,
    ExpenseCreate,
    ExpenseUpdate,
    validate,
)

logger = logging.getLogger(__name__)

DUPLICATE_CATEGORY_NAME = "A category with this name already exists"
INVALID_CATEGORY = "Invalid category selected"
COPY_SUFFIX = " (copy)"
DESCRIPTION_MAX_LENGTH = 255

SORT_COLUMNS = {
    "date": Expense.date,
    "amount": Expense.amount_cents,
    "description": Expense.description,
}
SORT_ORDERS = ("asc", "desc")


class Unauthorized(Exception):
    pass


class NotFound(ValueError):
    pass


def require_principal(principal: Optional[Principal]) -> Principal:
    if principal is None:
        raise Unauthorized("Unauthorized")
    return principal


@dataclass
class ExpenseFilters:
    category_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    search: Optional[str] = None
    sort_by: str = "date"
    sort_order: str = "desc"
    limit: int = 50
    offset: int = 0


@dataclass
class ExpensePage:
    expenses: list[Expense]
    total: int
    has_more: bool


@dataclass
class CategorySummary:
    category: Category
    expense_count: int


@dataclass
class CategoryDetail:
    category: Category
    expense_count: int
    recent_expenses: list[Expense]


@dataclass
class CategoryBreakdown:
    category_id: str
    name: str
    color: str
    icon: Optional[str]
    total: Decimal
    count: int


@dataclass
class ExpenseStats:
    period: str
    start: datetime
    end: datetime
    total: Decimal
    count: int
    average_per_day: float
    by_category: list[CategoryBreakdown]
    previous_total: Decimal
    percentage_change: float


@dataclass
class CategoryStats:
    total_spent: Decimal
    monthly_spent: Decimal
    budget: Optional[Decimal]
    budget_remaining: Optional[Decimal]
    budget_percentage: Optional[float]
    expense_count: int


@dataclass
class DailyBucket:
    date: date
    total: Decimal
    expenses: list[Expense]


def percentage_change(total_cents: int, previous_cents: int) -> float:
    # A previous total of zero reports 0, not "no change".
    if previous_cents <= 0:
        return 0.0
    return (total_cents - previous_cents) / previous_cents * 100


class _ScopedService:
    def __init__(
        self, session: Session, invalidator: Optional[ViewInvalidator] = None
    ) -> None:
        self.session = session
        self.invalidator = invalidator or ViewInvalidator()

    def _owned_category(self, user_id: str, category_id: str) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.id == category_id, Category.user_id == user_id
            )
        )

    def _owned_expense(self, user_id: str, expense_id: str) -> Optional[Expense]:
        return self.session.scalar(
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.id == expense_id, Expense.user_id == user_id)
        )

    def _expense_count(self, user_id: str, category_id: str) -> int:
        return int(
            self.session.execute(
                select(func.count(Expense.id)).where(
                    Expense.user_id == user_id, Expense.category_id == category_id
                )
            ).scalar_one()
            or 0
        )

    def _failed(self, event: str, principal: Principal, message: str) -> Err:
        self.session.rollback()
        logger.exception(f"{event}: user_id={principal.user_id}")
        return Err(ErrorKind.internal, message)


class CategoryService(_ScopedService):
    def _name_taken(
        self, user_id: str, name: str, exclude_id: Optional[str] = None
    ) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == user_id, Category.name == name
        )
        if exclude_id:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, principal: Optional[Principal], data: Mapping[str, Any]) -> Result:
        if principal is None:
            return Err(
                ErrorKind.unauthorized, "You must be logged in to create categories"
            )
        payload, errors = validate(CategoryCreate, data)
        if errors:
            return ValidationErr(errors)

        try:
            if self._name_taken(principal.user_id, payload.name):
                return ValidationErr({"name": [DUPLICATE_CATEGORY_NAME]})
            category = Category(
                user_id=principal.user_id,
                name=payload.name,
                color=payload.color,
                icon=payload.icon,
                budget_cents=(
                    amount_to_cents(payload.budget)
                    if payload.budget is not None
                    else None
                ),
            )
            self.session.add(category)
            self.session.commit()
            self.session.refresh(category)
        except IntegrityError:
            self.session.rollback()
            return ValidationErr({"name": [DUPLICATE_CATEGORY_NAME]})
        except SQLAlchemyError:
            return self._failed(
                "create_category_failed",
                principal,
                "Failed to create category. Please try again.",
            )

        self.invalidator.invalidate(DASHBOARD_VIEW, CATEGORIES_VIEW)
        logger.info(
            f"category_created: user_id={principal.user_id} category_id={category.id}"
        )
        return Ok(data=category)

    def update(
        self,
        principal: Optional[Principal],
        category_id: str,
        data: Mapping[str, Any],
    ) -> Result:
        if principal is None:
            return Err(
                ErrorKind.unauthorized, "You must be logged in to update categories"
            )
        payload, errors = validate(CategoryUpdate, data)
        if errors:
            return ValidationErr(errors)
        changes = payload.model_dump(exclude_unset=True)

        try:
            category = self._owned_category(principal.user_id, category_id)
            if category is None:
                return Err(ErrorKind.not_found, "Category not found")

            new_name = changes.get("name")
            if new_name and new_name != category.name:
                if self._name_taken(principal.user_id, new_name, exclude_id=category.id):
                    return ValidationErr({"name": [DUPLICATE_CATEGORY_NAME]})
                category.name = new_name
            if "color" in changes:
                category.color = changes["color"]
            if "icon" in changes:
                category.icon = changes["icon"]
            if "budget" in changes:
                budget = changes["budget"]
                category.budget_cents = (
                    amount_to_cents(budget) if budget is not None else None
                )
            self.session.commit()
            self.session.refresh(category)
        except IntegrityError:
            self.session.rollback()
            return ValidationErr({"name": [DUPLICATE_CATEGORY_NAME]})
        except SQLAlchemyError:
            return self._failed(
                "update_category_failed",
                principal,
                "Failed to update category. Please try again.",
            )

        self.invalidator.invalidate(DASHBOARD_VIEW, CATEGORIES_VIEW)
        logger.info(
            f"category_updated: user_id={principal.user_id} category_id={category.id}"
        )
        return Ok(data=category)

    def delete(self, principal: Optional[Principal], category_id: str) -> Result:
        if principal is None:
            return Err(
                ErrorKind.unauthorized, "You must be logged in to delete categories"
            )
        try:
            category = self._owned_category(principal.user_id, category_id)
            if category is None:
                return Err(ErrorKind.not_found, "Category not found")

            expense_count = self._expense_count(principal.user_id, category.id)
            if expense_count > 0:
                return Err(
                    ErrorKind.conflict,
                    f"Cannot delete category with {expense_count} expense(s). "
                    "Please delete or reassign the expenses first.",
                )

            self.session.delete(category)
            self.session.commit()
        except SQLAlchemyError:
            return self._failed(
                "delete_category_failed",
                principal,
                "Failed to delete category. Please try again.",
            )

        self.invalidator.invalidate(DASHBOARD_VIEW, CATEGORIES_VIEW)
        logger.info(
            f"category_deleted: user_id={principal.user_id} category_id={category_id}"
        )
        return Ok()

    def bulk_delete(
        self, principal: Optional[Principal], ids: Sequence[str]
    ) -> Result:
        if principal is None:
            return Err(
                ErrorKind.unauthorized, "You must be logged in to delete categories"
            )
        payload, errors = validate(BulkIds, {"ids": list(ids)})
        if errors:
            return ValidationErr(errors)

        try:
            blocked = self.session.execute(
                select(Category.id)
                .join(Expense, Expense.category_id == Category.id)
                .where(
                    Category.user_id == principal.user_id,
                    Category.id.in_(payload.ids),
                )
                .group_by(Category.id)
            ).all()
            if blocked:
                noun = "category" if len(blocked) == 1 else "categories"
                return Err(
                    ErrorKind.conflict,
                    f"Cannot delete {len(blocked)} {noun} with expenses",
                )

            result = self.session.execute(
                delete(Category).where(
                    Category.user_id == principal.user_id,
                    Category.id.in_(payload.ids),
                )
            )
            self.session.commit()
        except SQLAlchemyError:
            return self._failed(
                "bulk_delete_categories_failed",
                principal,
                "Failed to delete categories. Please try again.",
            )

        self.invalidator.invalidate(DASHBOARD_VIEW, CATEGORIES_VIEW)
        logger.info(
            f"categories_deleted: user_id={principal.user_id} count={result.rowcount}"
        )
        return Ok(count=result.rowcount)

    def list(self, principal: Optional[Principal]) -> list[CategorySummary]:
        principal = require_principal(principal)
        rows = self.session.execute(
            select(Category, func.count(Expense.id).label("expense_count"))
            .outerjoin(Expense, Expense.category_id == Category.id)
            .where(Category.user_id == principal.user_id)
            .group_by(Category.id)
            .order_by(Category.name.asc())
        ).all()
        return [
            CategorySummary(category=row[0], expense_count=int(row.expense_count))
            for row in rows
        ]

    def get(
        self, principal: Optional[Principal], category_id: str, *, recent: int = 10
    ) -> CategoryDetail:
        principal = require_principal(principal)
        category = self._owned_category(principal.user_id, category_id)
        if category is None:
            raise NotFound("Category not found")
        recent_expenses = self.session.scalars(
            select(Expense)
            .where(
                Expense.user_id == principal.user_id,
                Expense.category_id == category.id,
            )
            .order_by(Expense.date.desc(), Expense.id.desc())
            .limit(recent)
        ).all()
        return CategoryDetail(
            category=category,
            expense_count=self._expense_count(principal.user_id, category.id),
            recent_expenses=list(recent_expenses),
        )

    def stats(
        self,
        principal: Optional[Principal],
        category_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> CategoryStats:
        principal = require_principal(principal)
        category = self._owned_category(principal.user_id, category_id)
        if category is None:
            raise NotFound("Category not found")

        rows = self.session.execute(
            select(Expense.amount_cents, Expense.date).where(
                Expense.user_id == principal.user_id,
                Expense.category_id == category.id,
            )
        ).all()

        this_month = month_start(now or datetime.utcnow())
        total_cents = 0
        monthly_cents = 0
        for row in rows:
            total_cents += row.amount_cents
            if row.date >= this_month:
                monthly_cents += row.amount_cents

        budget_cents = category.budget_cents
        budget_remaining = None
        budget_percentage = None
        if budget_cents:
            budget_remaining = cents_to_amount(budget_cents - monthly_cents)
            budget_percentage = monthly_cents / budget_cents * 100

        return CategoryStats(
            total_spent=cents_to_amount(total_cents),
            monthly_spent=cents_to_amount(monthly_cents),
            budget=category.budget,
            budget_remaining=budget_remaining,
            budget_percentage=budget_percentage,
            expense_count=len(rows),
        )


class ExpenseService(_ScopedService):
    def _changed(self) -> None:
        self.invalidator.invalidate(DASHBOARD_VIEW, EXPENSES_VIEW)

    def create(self, principal: Optional[Principal], data: Mapping[str, Any]) -> Result:
        if principal is None:
            return Err(
                ErrorKind.unauthorized, "You must be logged in to create expenses"
            )
        payload, errors = validate(ExpenseCreate, data)
        if errors:
            return ValidationErr(errors)

        try:
            category = self._owned_category(
                principal.user_id, str(payload.category_id)
            )
            if category is None:
                return ValidationErr({"category_id": [INVALID_CATEGORY]})
            expense = Expense(
                user_id=principal.user_id,
                category_id=category.id,
                amount_cents=amount_to_cents(payload.amount),
                description=payload.description,
                date=payload.date,
                receipt_url=payload.receipt_url,
            )
            self.session.add(expense)
            self.session.commit()
            self.session.refresh(expense)
        except SQLAlchemyError:
            return self._failed(
                "create_expense_failed", principal, "Failed to create expense"
            )

        self._changed()
        logger.info(
            f"expense_created: user_id={principal.user_id} expense_id={expense.id}"
        )
        return Ok(data=expense)

    def update(
        self,
        principal: Optional[Principal],
        expense_id: str,
        data: Mapping[str, Any],
    ) -> Result:
        if principal is None:
            return Err(
                ErrorKind.unauthorized, "You must be logged in to update expenses"
            )
        payload, errors = validate(ExpenseUpdate, data)
        if errors:
            return ValidationErr(errors)
        changes = payload.model_dump(exclude_unset=True)

        try:
            expense = self._owned_expense(principal.user_id, expense_id)
            if expense is None:
                return Err(ErrorKind.not_found, "Expense not found")

            if "category_id" in changes:
                category = self._owned_category(
                    principal.user_id, str(changes["category_id"])
                )
                if category is None:
                    return ValidationErr({"category_id": [INVALID_CATEGORY]})
                expense.category_id = category.id
            if "amount" in changes:
                expense.amount_cents = amount_to_cents(changes["amount"])
            if "description" in changes:
                expense.description = changes["description"]
            if "date" in changes:
                expense.date = changes["date"]
            if "receipt_url" in changes:
                expense.receipt_url = changes["receipt_url"]
            self.session.commit()
            self.session.refresh(expense)
        except SQLAlchemyError:
            return self._failed(
                "update_expense_failed",
                principal,
                "Failed to update expense. Please try again.",
            )

        self._changed()
        logger.info(
            f"expense_updated: user_id={principal.user_id} expense_id={expense.id}"
        )
        return Ok(data=expense)

    def delete(self, principal: Optional[Principal], expense_id: str) -> Result:
        if principal is None:
            return Err(
                ErrorKind.unauthorized, "You must be logged in to delete expenses"
            )
        try:
            expense = self._owned_expense(principal.user_id, expense_id)
            if expense is None:
                return Err(ErrorKind.not_found, "Expense not found")
            self.session.delete(expense)
            self.session.commit()
        except SQLAlchemyError:
            return self._failed(
                "delete_expense_failed",
                principal,
                "Failed to delete expense. Please try again.",
            )

        self._changed()
        logger.info(
            f"expense_deleted: user_id={principal.user_id} expense_id={expense_id}"
        )
        return Ok()

    def bulk_delete(
        self, principal: Optional[Principal], ids: Sequence[str]
    ) -> Result:
        if principal is None:
            return Err(
                ErrorKind.unauthorized, "You must be logged in to delete expenses"
            )
        payload, errors = validate(BulkIds, {"ids": list(ids)})
        if errors:
            return ValidationErr(errors)

        try:
            result = self.session.execute(
                delete(Expense).where(
                    Expense.user_id == principal.user_id,
                    Expense.id.in_(payload.ids),
                )
            )
            self.session.commit()
        except SQLAlchemyError:
            return self._failed(
                "bulk_delete_expenses_failed",
                principal,
                "Failed to delete expenses. Please try again.",
            )

        self._changed()
        logger.info(
            f"expenses_deleted: user_id={principal.user_id} count={result.rowcount}"
        )
        return Ok(count=result.rowcount)

    def bulk_update_category(
        self, principal: Optional[Principal], ids: Sequence[str], category_id: str
    ) -> Result:
        if principal is None:
            return Err(
                ErrorKind.unauthorized, "You must be logged in to update expenses"
            )
        payload, errors = validate(
            BulkCategoryUpdate, {"ids": list(ids), "category_id": category_id}
        )
        if errors:
            return ValidationErr(errors)

        try:
            category = self._owned_category(principal.user_id, payload.category_id)
            if category is None:
                return Err(ErrorKind.validation, INVALID_CATEGORY)
            result = self.session.execute(
                update(Expense)
                .where(
                    Expense.user_id == principal.user_id,
                    Expense.id.in_(payload.ids),
                )
                .values(category_id=category.id)
            )
            self.session.commit()
        except SQLAlchemyError:
            return self._failed(
                "bulk_update_category_failed",
                principal,
                "Failed to update expenses. Please try again.",
            )

        self._changed()
        logger.info(
            f"expenses_recategorized: user_id={principal.user_id} "
            f"category_id={category_id} count={result.rowcount}"
        )
        return Ok(count=result.rowcount)

    def duplicate(self, principal: Optional[Principal], expense_id: str) -> Result:
        if principal is None:
            return Err(
                ErrorKind.unauthorized, "You must be logged in to duplicate expenses"
            )
        try:
            original = self._owned_expense(principal.user_id, expense_id)
            if original is None:
                return Err(ErrorKind.not_found, "Expense not found")

            description = original.description
            room = DESCRIPTION_MAX_LENGTH - len(COPY_SUFFIX)
            copy = Expense(
                user_id=principal.user_id,
                category_id=original.category_id,
                amount_cents=original.amount_cents,
                description=f"{description[:room]}{COPY_SUFFIX}",
                date=datetime.utcnow(),
                receipt_url=original.receipt_url,
            )
            self.session.add(copy)
            self.session.commit()
            self.session.refresh(copy)
        except SQLAlchemyError:
            return self._failed(
                "duplicate_expense_failed",
                principal,
                "Failed to duplicate expense. Please try again.",
            )

        self._changed()
        logger.info(
            f"expense_duplicated: user_id={principal.user_id} "
            f"source_id={expense_id} expense_id={copy.id}"
        )
        return Ok(data=copy)

    def get(self, principal: Optional[Principal], expense_id: str) -> Expense:
        principal = require_principal(principal)
        expense = self._owned_expense(principal.user_id, expense_id)
        if expense is None:
            raise NotFound("Expense not found")
        return expense

    def list(
        self, principal: Optional[Principal], filters: Optional[ExpenseFilters] = None
    ) -> ExpensePage:
        principal = require_principal(principal)
        filters = filters or ExpenseFilters()
        if filters.sort_by not in SORT_COLUMNS:
            raise ValueError(f"Unsupported sort field: {filters.sort_by}")
        if filters.sort_order not in SORT_ORDERS:
            raise ValueError(f"Unsupported sort order: {filters.sort_order}")

        conditions = [Expense.user_id == principal.user_id]
        if filters.category_id:
            conditions.append(Expense.category_id == filters.category_id)
        if filters.start:
            conditions.append(Expense.date >= filters.start)
        if filters.end:
            conditions.append(Expense.date <= filters.end)
        if filters.search:
            conditions.append(
                func.lower(Expense.description).contains(
                    filters.search.lower(), autoescape=True
                )
            )

        column = SORT_COLUMNS[filters.sort_by]
        ordering = column.asc() if filters.sort_order == "asc" else column.desc()
        expenses = self.session.scalars(
            select(Expense)
            .options(joinedload(Expense.category))
            .where(*conditions)
            .order_by(ordering, Expense.id.asc())
            .offset(filters.offset)
            .limit(filters.limit)
        ).all()
        total = int(
            self.session.execute(
                select(func.count(Expense.id)).where(*conditions)
            ).scalar_one()
            or 0
        )
        return ExpensePage(
            expenses=list(expenses),
            total=total,
            has_more=filters.offset + len(expenses) < total,
        )

    def search(
        self, principal: Optional[Principal], query: str, limit: int = 10
    ) -> list[Expense]:
        principal = require_principal(principal)
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(
                Expense.user_id == principal.user_id,
                func.lower(Expense.description).contains(
                    query.lower(), autoescape=True
                ),
            )
            .order_by(Expense.date.desc(), Expense.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def recent(self, principal: Optional[Principal], limit: int = 10) -> list[Expense]:
        principal = require_principal(principal)
        stmt = (
            select(Expense)
            .options(joinedload(Expense.category))
            .where(Expense.user_id == principal.user_id)
            .order_by(Expense.date.desc(), Expense.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())


class StatsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def expense_stats(
        self,
        principal: Optional[Principal],
        period: str = "month",
        *,
        now: Optional[datetime] = None,
    ) -> ExpenseStats:
        principal = require_principal(principal)
        window = resolve_stats_window(period, now=now)

        expenses = self.session.scalars(
            select(Expense)
            .options(joinedload(Expense.category))
            .where(
                Expense.user_id == principal.user_id,
                Expense.date >= window.start,
                Expense.date <= window.end,
            )
            .order_by(Expense.date.asc(), Expense.id.asc())
        ).all()

        total_cents = 0
        groups: dict[str, dict[str, Any]] = {}
        for expense in expenses:
            total_cents += expense.amount_cents
            group = groups.get(expense.category_id)
            if group is None:
                group = groups[expense.category_id] = {
                    "category": expense.category,
                    "cents": 0,
                    "count": 0,
                }
            group["cents"] += expense.amount_cents
            group["count"] += 1

        by_category = [
            CategoryBreakdown(
                category_id=category_id,
                name=group["category"].name,
                color=group["category"].color,
                icon=group["category"].icon,
                total=cents_to_amount(group["cents"]),
                count=group["count"],
            )
            for category_id, group in groups.items()
        ]
        by_category.sort(key=lambda item: item.total, reverse=True)

        previous_cents = sum(
            self.session.scalars(
                select(Expense.amount_cents).where(
                    Expense.user_id == principal.user_id,
                    Expense.date >= window.previous_start,
                    Expense.date < window.start,
                )
            ).all()
        )

        return ExpenseStats(
            period=window.slug,
            start=window.start,
            end=window.end,
            total=cents_to_amount(total_cents),
            count=len(expenses),
            average_per_day=total_cents / 100 / window.days,
            by_category=by_category,
            previous_total=cents_to_amount(previous_cents),
            percentage_change=percentage_change(total_cents, previous_cents),
        )

    def by_date_range(
        self, principal: Optional[Principal], start: datetime, end: datetime
    ) -> list[DailyBucket]:
        principal = require_principal(principal)
        expenses = self.session.scalars(
            select(Expense)
            .options(joinedload(Expense.category))
            .where(
                Expense.user_id == principal.user_id,
                Expense.date >= start,
                Expense.date <= end,
            )
            .order_by(Expense.date.asc(), Expense.id.asc())
        ).all()

        buckets: dict[date, tuple[int, list[Expense]]] = {}
        for expense in expenses:
            day = expense.date.date()
            cents, members = buckets.get(day, (0, []))
            members.append(expense)
            buckets[day] = (cents + expense.amount_cents, members)

        return [
            DailyBucket(date=day, total=cents_to_amount(cents), expenses=members)
            for day, (cents, members) in sorted(buckets.items())
        ]
