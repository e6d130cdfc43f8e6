import logging
from typing import Optional

logger = logging.getLogger(__name__)

DASHBOARD_VIEW = "dashboard"
EXPENSES_VIEW = "expenses"
CATEGORIES_VIEW = "categories"


class ViewInvalidator:
    """Fire-and-forget record of views whose cached data is stale.

    The HTTP layer turns the collected names into ``HX-Trigger`` events so
    the presentation layer refetches them.
    """

    def __init__(self) -> None:
        self.stale: list[str] = []

    def invalidate(self, *views: str) -> None:
        for view in views:
            if view not in self.stale:
                self.stale.append(view)
        logger.debug(f"views_invalidated: views={','.join(views)}")

    def hx_trigger(self) -> Optional[str]:
        if not self.stale:
            return None
        return ", ".join(f"{view}-changed" for view in self.stale)
