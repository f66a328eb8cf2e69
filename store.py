"""Owner-scoped access to the transactions table.

Every public store operation goes through :func:`with_session_refresh`: an expired
session is refreshed exactly once and the operation retried; a second failure asks the
caller to re-authenticate.
"""

from __future__ import annotations

import functools
import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth import AuthExpired, ReauthenticationRequired, UserSession
from installments import NoInstallmentsRemaining
from models import Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")
PaymentFactory = Callable[[Transaction], Transaction]


class StoreError(Exception):
    """The database could not complete the request."""


class TransactionNotFound(ValueError):
    pass


def with_session_refresh(method: Callable[..., T]) -> Callable[..., T]:
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs) -> T:
        try:
            return method(self, *args, **kwargs)
        except AuthExpired as exc:
            logger.info(f"store_auth_expired: op={method.__name__} reason={exc}")
        self.user_session.refresh()
        try:
            return method(self, *args, **kwargs)
        except AuthExpired as exc:
            raise ReauthenticationRequired(str(exc)) from exc

    return wrapper


class TransactionStore:
    def __init__(self, session: Session, user_session: UserSession) -> None:
        self.session = session
        self.user_session = user_session

    @property
    def user_id(self) -> int:
        return self.user_session.user_id()

    @with_session_refresh
    def owner_id(self) -> int:
        return self.user_id

    def _fail(self, op: str, exc: SQLAlchemyError) -> StoreError:
        self.session.rollback()
        logger.error(f"store_error: op={op} error={exc.__class__.__name__}")
        return StoreError(f"Could not {op} transactions, please retry")

    @with_session_refresh
    def list_transactions(self) -> list[Transaction]:
        user_id = self.user_id
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise self._fail("load", exc) from exc

    @with_session_refresh
    def get(self, transaction_id: int) -> Transaction:
        user_id = self.user_id
        try:
            txn = self.session.scalar(
                select(Transaction).where(
                    Transaction.user_id == user_id, Transaction.id == transaction_id
                )
            )
        except SQLAlchemyError as exc:
            raise self._fail("load", exc) from exc
        if not txn:
            raise TransactionNotFound("Transaction not found")
        return txn

    @with_session_refresh
    def categories(self) -> list[str]:
        user_id = self.user_id
        stmt = (
            select(Transaction.category)
            .where(Transaction.user_id == user_id, Transaction.category.is_not(None))
            .group_by(Transaction.category)
            .order_by(func.count(Transaction.id).desc(), Transaction.category)
        )
        try:
            return [row for row in self.session.scalars(stmt).all() if row]
        except SQLAlchemyError as exc:
            raise self._fail("load", exc) from exc

    def _add_first_payment(
        self, txn: Transaction, first_payment: Optional[PaymentFactory]
    ) -> None:
        if first_payment is None:
            return
        self.session.flush()
        payment = first_payment(txn)
        payment.user_id = txn.user_id
        self.session.add(payment)

    @with_session_refresh
    def insert(
        self, txn: Transaction, first_payment: Optional[PaymentFactory] = None
    ) -> Transaction:
        """Insert ``txn``; ``first_payment`` builds a payment row committed with it."""
        txn.user_id = self.user_id
        try:
            self.session.add(txn)
            self._add_first_payment(txn, first_payment)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("save", exc) from exc
        self.session.refresh(txn)
        return txn

    @with_session_refresh
    def save(
        self, txn: Transaction, first_payment: Optional[PaymentFactory] = None
    ) -> Transaction:
        if txn.user_id != self.user_id:
            raise TransactionNotFound("Transaction not found")
        try:
            self._add_first_payment(txn, first_payment)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("save", exc) from exc
        self.session.refresh(txn)
        return txn

    @with_session_refresh
    def delete(self, transaction_id: int) -> None:
        user_id = self.user_id
        try:
            txn = self.session.scalar(
                select(Transaction).where(
                    Transaction.user_id == user_id, Transaction.id == transaction_id
                )
            )
            if txn is not None:
                self.session.delete(txn)
                self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("delete", exc) from exc
        if txn is None:
            raise TransactionNotFound("Transaction not found")

    @with_session_refresh
    def record_installment_payment(
        self, credit_txn: Transaction, payment: Transaction
    ) -> Transaction:
        """Decrement the remaining counter and insert the payment in one commit."""
        user_id = self.user_id
        if credit_txn.user_id != user_id:
            raise TransactionNotFound("Transaction not found")
        payment.user_id = user_id
        try:
            result = self.session.execute(
                update(Transaction)
                .where(
                    Transaction.id == credit_txn.id,
                    Transaction.user_id == user_id,
                    Transaction.is_credit.is_(True),
                    Transaction.remaining_installments > 0,
                )
                .values(remaining_installments=Transaction.remaining_installments - 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.session.rollback()
                raise NoInstallmentsRemaining("No remaining installments to pay")
            self.session.add(payment)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(
                f"installment_payment_failed: transaction_id={credit_txn.id} "
                f"error={exc.__class__.__name__}"
            )
            raise StoreError("Failed to record installment payment") from exc
        self.session.refresh(credit_txn)
        self.session.refresh(payment)
        return payment
