"""
Durable order store and balance ledger.

Every multi-step mutation runs inside ``session.begin()`` so it either commits
as a whole or rolls back as a whole:

- register user + create zero balance
- mark order processed + credit the owner
- debit balance + append withdrawal
"""
import enum
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from common.error_handling import BusinessLogicError, DuplicateLoginError, ErrorCodes, NotFoundError
from .db import make_sessionmaker
from .models import (
    Base, User, Order, Balance, Withdrawal,
    ORDER_NEW, ORDER_PROCESSING, ORDER_PROCESSED, ORDER_INVALID,
)

logger = logging.getLogger(__name__)

Amount = Union[Decimal, int, float, str]

# scale of the Numeric(18, 2) amount columns
CENT = Decimal("0.01")


class OrderRegistration(str, enum.Enum):
    CREATED = "CREATED"
    OWNED_BY_CALLER = "OWNED_BY_CALLER"
    OWNED_BY_OTHER = "OWNED_BY_OTHER"


class WithdrawResult(str, enum.Enum):
    OK = "OK"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"


def _to_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, float):
        # go through str so 0.1 stays 0.1
        amount = str(amount)
    # round before any comparison so balances and ledger rows agree
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Storage:
    def __init__(self, engine):
        self.engine = engine
        self.session_factory = make_sessionmaker(engine)

    def create_schema(self):
        Base.metadata.create_all(bind=self.engine)

    # users

    def register_user(self, login: str, password_hash: str) -> None:
        try:
            with self.session_factory() as db, db.begin():
                db.add(User(login=login, password=password_hash))
                db.flush()
                db.add(Balance(login=login, current=Decimal("0"), withdrawn=Decimal("0")))
        except IntegrityError:
            raise DuplicateLoginError(login)
        logger.info(f"Registered user {login}")

    def authenticate(self, login: str, password_hash: str) -> bool:
        with self.session_factory() as db:
            found = db.execute(
                select(User.id).where(User.login == login, User.password == password_hash)
            ).first()
        return found is not None

    # orders

    def _order_owner(self, db, number: str):
        return db.execute(select(Order.login).where(Order.number == number)).scalar_one_or_none()

    def register_order(self, login: str, number: str) -> OrderRegistration:
        """Record ``number`` for ``login`` unless some user already owns it.

        The unique index on ``orders.number`` decides concurrent races: the
        losing insert fails and its outcome is read back from the winner's row.
        """
        with self.session_factory() as db:
            owner = self._order_owner(db, number)
        if owner is not None:
            return self._ownership(login, owner)

        try:
            with self.session_factory() as db, db.begin():
                db.add(Order(
                    number=number,
                    login=login,
                    status=ORDER_NEW,
                    accrual=Decimal("0"),
                    uploaded_at=_now(),
                ))
        except IntegrityError:
            with self.session_factory() as db:
                owner = self._order_owner(db, number)
            if owner is None:
                # not a duplicate number, e.g. unknown login
                raise
            logger.info(f"Order {number} lost insert race, owned by {owner}")
            return self._ownership(login, owner)

        logger.info(f"Order {number} registered for {login}")
        return OrderRegistration.CREATED

    @staticmethod
    def _ownership(login: str, owner: str) -> OrderRegistration:
        if owner == login:
            return OrderRegistration.OWNED_BY_CALLER
        return OrderRegistration.OWNED_BY_OTHER

    def list_orders(self, login: str) -> List[Order]:
        with self.session_factory() as db:
            return list(db.execute(
                select(Order).where(Order.login == login).order_by(Order.uploaded_at, Order.id)
            ).scalars().all())

    def claim_pending(self) -> List[Order]:
        """Move NEW orders to PROCESSING and return everything in PROCESSING.

        Orders left in PROCESSING by an interrupted cycle are returned again.
        """
        with self.session_factory() as db, db.begin():
            db.execute(
                update(Order).where(Order.status == ORDER_NEW).values(status=ORDER_PROCESSING)
            )
            return list(db.execute(
                select(Order).where(Order.status == ORDER_PROCESSING).order_by(Order.id)
            ).scalars().all())

    def get_order(self, number: str) -> Optional[Order]:
        with self.session_factory() as db:
            return db.execute(select(Order).where(Order.number == number)).scalar_one_or_none()

    def mark_invalid(self, number: str) -> bool:
        with self.session_factory() as db, db.begin():
            result = db.execute(
                update(Order)
                .where(Order.number == number, Order.status.in_([ORDER_NEW, ORDER_PROCESSING]))
                .values(status=ORDER_INVALID)
            )
            changed = result.rowcount == 1
        if changed:
            logger.info(f"Order {number} marked INVALID")
        return changed

    def mark_processed(self, number: str, accrual: Amount) -> bool:
        """Mark ``number`` PROCESSED and credit its owner in one transaction.

        Returns False without touching the balance when the order is unknown
        or already terminal, so an order is never credited twice.
        """
        amount = _to_decimal(accrual)
        with self.session_factory() as db, db.begin():
            owner = self._order_owner(db, number)
            if owner is None:
                logger.warning(f"Order {number} vanished before processing")
                return False
            result = db.execute(
                update(Order)
                .where(Order.number == number, Order.status.in_([ORDER_NEW, ORDER_PROCESSING]))
                .values(status=ORDER_PROCESSED, accrual=amount)
            )
            if result.rowcount != 1:
                return False
            self._credit(db, owner, amount)
        logger.info(f"Order {number} PROCESSED, credited {amount} to {owner}")
        return True

    # balance ledger

    def _credit(self, db, login: str, amount: Decimal):
        result = db.execute(
            update(Balance).where(Balance.login == login).values(current=Balance.current + amount)
        )
        if result.rowcount != 1:
            # rolls back the surrounding transaction
            raise NotFoundError(login)

    def credit(self, login: str, amount: Amount) -> None:
        with self.session_factory() as db, db.begin():
            self._credit(db, login, _to_decimal(amount))

    def get_balance(self, login: str) -> Balance:
        with self.session_factory() as db:
            balance = db.execute(select(Balance).where(Balance.login == login)).scalar_one_or_none()
        if balance is None:
            raise NotFoundError(login)
        return balance

    def withdraw(self, login: str, order_ref: str, amount: Amount) -> WithdrawResult:
        """Debit ``amount`` from ``login`` and record it against ``order_ref``.

        The debit is a single conditional UPDATE, so the database serializes
        concurrent withdrawals for one user and the balance never goes negative.
        Amounts are rounded to whole cents first; one that rounds to nothing
        is refused.
        """
        amount = _to_decimal(amount)
        if amount <= 0:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, f"withdrawal sum must be positive, got {amount}",
                                     field="sum")
        with self.session_factory() as db, db.begin():
            result = db.execute(
                update(Balance)
                .where(Balance.login == login, Balance.current >= amount)
                .values(current=Balance.current - amount, withdrawn=Balance.withdrawn + amount)
            )
            if result.rowcount != 1:
                logger.info(f"Withdrawal of {amount} by {login} rejected: insufficient funds")
                return WithdrawResult.INSUFFICIENT_FUNDS
            db.add(Withdrawal(login=login, order_number=order_ref, sum=amount, processed_at=_now()))
        logger.info(f"Withdrawal of {amount} by {login} for order {order_ref}")
        return WithdrawResult.OK

    def list_withdrawals(self, login: str) -> List[Withdrawal]:
        with self.session_factory() as db:
            return list(db.execute(
                select(Withdrawal).where(Withdrawal.login == login)
                .order_by(Withdrawal.processed_at, Withdrawal.id)
            ).scalars().all())
