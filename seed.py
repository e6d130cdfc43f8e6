import argparse
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from auth import hash_password
from database import init_db, session_scope
from models import Category, Expense, User, amount_to_cents

logger = logging.getLogger(__name__)

DEMO_CATEGORIES = [
    {"name": "Food & Dining", "color": "#EF4444", "icon": "🍔", "budget": "500"},
    {"name": "Transportation", "color": "#3B82F6", "icon": "🚗", "budget": "200"},
    {"name": "Entertainment", "color": "#8B5CF6", "icon": "🎮", "budget": "150"},
]

# (amount, description, date, index into DEMO_CATEGORIES)
DEMO_EXPENSES = [
    ("45.50", "Grocery shopping", datetime(2024, 2, 1), 0),
    ("12.00", "Uber ride", datetime(2024, 2, 1), 1),
    ("59.99", "Movie tickets", datetime(2024, 1, 30), 2),
    ("89.99", "Restaurant dinner", datetime(2024, 1, 28), 0),
    ("25.00", "Gas", datetime(2024, 1, 27), 1),
]


class DemoSeeder:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _upsert_user(self, email: str, password: str, name: Optional[str]) -> User:
        user = self.session.scalar(select(User).where(User.email == email))
        if user:
            return user
        user = User(email=email, name=name, password_hash=hash_password(password))
        self.session.add(user)
        self.session.flush()
        return user

    def _upsert_category(self, user: User, spec: dict[str, str]) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.user_id == user.id, Category.name == spec["name"]
            )
        )
        if category:
            return category
        category = Category(
            user_id=user.id,
            name=spec["name"],
            color=spec["color"],
            icon=spec["icon"],
            budget_cents=amount_to_cents(Decimal(spec["budget"])),
        )
        self.session.add(category)
        self.session.flush()
        return category

    def run(
        self, email: str, password: str, name: Optional[str] = None
    ) -> dict[str, object]:
        """Create the demo user and categories if missing, then replace the
        user's expenses with the sample set."""
        user = self._upsert_user(email.strip().lower(), password, name)
        categories = [self._upsert_category(user, spec) for spec in DEMO_CATEGORIES]

        self.session.execute(delete(Expense).where(Expense.user_id == user.id))
        for amount, description, when, category_index in DEMO_EXPENSES:
            self.session.add(
                Expense(
                    user_id=user.id,
                    category_id=categories[category_index].id,
                    amount_cents=amount_to_cents(Decimal(amount)),
                    description=description,
                    date=when,
                )
            )
        self.session.commit()

        return {
            "user_id": user.id,
            "categories": len(categories),
            "expenses": len(DEMO_EXPENSES),
        }


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the database with demo data.")
    parser.add_argument("--email", default="demo@example.com")
    parser.add_argument("--password", default="password123")
    parser.add_argument("--name", default="Demo User")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    init_db()
    with session_scope() as session:
        summary = DemoSeeder(session).run(args.email, args.password, args.name)
    logger.info(
        f"seed_completed: user_id={summary['user_id']} "
        f"categories={summary['categories']} expenses={summary['expenses']}"
    )


if __name__ == "__main__":
    main()
