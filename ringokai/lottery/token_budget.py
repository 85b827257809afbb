"""Shared budget of upper-tier reward credits, funded by poison draws."""

from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import InternalError
from ..models.settings import TOKEN_BUDGET_ROW_ID, TokenBudgetRow

logger = logging.getLogger(__name__)


class TokenBudget:
    """Atomic counter stored in the singleton ``token_budget`` row.

    Every mutation is a single conditional ``UPDATE`` so concurrent callers
    never read-modify-write the balance in Python.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def ensure_row(self) -> None:
        """Create the budget row with a zero balance if it does not exist yet."""

        exists = self._session.scalar(
            select(TokenBudgetRow.id).where(TokenBudgetRow.id == TOKEN_BUDGET_ROW_ID)
        )
        if exists is not None:
            return
        try:
            with self._session.begin_nested():
                self._session.add(TokenBudgetRow(id=TOKEN_BUDGET_ROW_ID, balance=0))
        except IntegrityError:
            # Another process created it first.
            logger.debug("Token budget row already created concurrently")

    def balance(self) -> int:
        value = self._session.scalar(
            select(TokenBudgetRow.balance).where(TokenBudgetRow.id == TOKEN_BUDGET_ROW_ID)
        )
        return int(value or 0)

    def credit(self, amount: int = 1) -> None:
        """Add ``amount`` credits.

        Raises
        ------
        ValueError
            If ``amount`` is not a positive integer.
        InternalError
            If the update fails.
        """

        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError("amount must be a positive integer")

        self.ensure_row()
        stmt = (
            update(TokenBudgetRow)
            .where(TokenBudgetRow.id == TOKEN_BUDGET_ROW_ID)
            .values(balance=TokenBudgetRow.balance + amount)
            .execution_options(synchronize_session=False)
        )
        try:
            self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise InternalError("Failed to credit token budget") from exc
        logger.debug("Token budget credited by %d", amount)

    def try_debit(self) -> bool:
        """Take one credit if any are available.

        Returns
        -------
        bool
            ``True`` when the balance was positive and has been decremented,
            ``False`` (with nothing changed) when the budget is empty.
        """

        stmt = (
            update(TokenBudgetRow)
            .where(
                TokenBudgetRow.id == TOKEN_BUDGET_ROW_ID,
                TokenBudgetRow.balance > 0,
            )
            .values(balance=TokenBudgetRow.balance - 1)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise InternalError("Failed to debit token budget") from exc

        debited = result.rowcount == 1
        logger.debug("Token budget debit %s", "succeeded" if debited else "refused")
        return debited


__all__ = ["TokenBudget"]
