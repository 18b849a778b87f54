import logging
from typing import List

from pydantic import ValidationError

from local_api import LocalApiClient
from models import Expense

logger = logging.getLogger(__name__)


class ExpenseStore(LocalApiClient):
    resource = 'expenses'

    async def list_expenses(self) -> List[Expense]:
        expenses: List[Expense] = []
        for row in await self._get_list():
            try:
                expenses.append(Expense.model_validate(row))
            except ValidationError as exc:
                logger.warning("Skipping malformed expense row: %s", exc)
        return expenses
