"""Read access to facility transactions for the income reports."""
from decimal import Decimal, InvalidOperation
import logging

from sqlalchemy import or_, select, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from models import Member, Plan, TX_STATUSES, TX_TYPES, Transaction
from transactions import DateWindow, TransactionRecord

logger = logging.getLogger(__name__)


class FetchFailure(Exception):
    """Transactions could not be read for the requested window. Safe to retry."""

    def __init__(self, message: str, facility_id: int | None = None):
        super().__init__(message)
        self.facility_id = facility_id


class InvalidTransactionRow(ValueError):
    pass


def parse_transaction_row(row) -> TransactionRecord:
    """Turn a joined (transaction, member name, plan name) row into a typed record."""
    tx_type = (row.type or '').lower()
    status = (row.status or '').lower()
    if tx_type not in TX_TYPES:
        raise InvalidTransactionRow(f"unknown transaction type {row.type!r}")
    if status not in TX_STATUSES:
        raise InvalidTransactionRow(f"unknown transaction status {row.status!r}")
    if row.created_at is None:
        raise InvalidTransactionRow("transaction has no timestamp")
    try:
        amount = Decimal(str(row.amount if row.amount is not None else 0))
    except InvalidOperation as exc:
        raise InvalidTransactionRow(f"bad amount {row.amount!r}") from exc
    payer = row.full_name or 'Unknown'
    return TransactionRecord(
        id=row.id,
        amount=amount,
        type=tx_type,
        status=status,
        timestamp=row.created_at,
        member_id=row.member_id,
        plan_id=row.plan_id,
        payer_name=payer,
        avatar_url=f"https://api.dicebear.com/6.x/initials/svg?seed={payer}",
        plan_name=row.plan_name or 'N/A',
    )


LIKE_ESCAPE = "\\"


def like_pattern(term: str) -> str:
    """Substring pattern for ``ilike`` with the user's wildcards taken literally."""
    escaped = term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2).replace("%", LIKE_ESCAPE + "%").replace("_", LIKE_ESCAPE + "_")
    return f"%{escaped}%"


class TransactionStore:
    """Range- and plan-bounded transaction reads over an explicit session.

    Each fetch runs under a statement timeout (PostgreSQL only) and is
    retried ``retries`` times on a transient ``OperationalError``.
    """

    def __init__(self, session, timeout_ms: int = 5000, retries: int = 1):
        self.session = session
        self.timeout_ms = timeout_ms
        self.retries = max(0, retries)

    def _statement(self, facility_id: int, window: DateWindow, plan_id: int | None, search: str | None):
        stmt = (
            select(
                Transaction.id,
                Transaction.amount,
                Transaction.type,
                Transaction.status,
                Transaction.created_at,
                Transaction.member_id,
                Transaction.plan_id,
                Member.full_name,
                Plan.name.label('plan_name'),
            )
            .outerjoin(Member, Member.id == Transaction.member_id)
            .outerjoin(Plan, Plan.id == Transaction.plan_id)
            .where(
                Transaction.facility_id == facility_id,
                Transaction.created_at >= window.start,
                Transaction.created_at < window.end,
            )
            .order_by(Transaction.created_at.desc())
        )
        if plan_id is not None:
            stmt = stmt.where(Transaction.plan_id == plan_id)
        if search:
            like = like_pattern(search)
            stmt = stmt.where(or_(
                Member.full_name.ilike(like, escape=LIKE_ESCAPE),
                Member.email.ilike(like, escape=LIKE_ESCAPE),
            ))
        return stmt

    def _apply_timeout(self) -> None:
        bind = self.session.get_bind()
        if self.timeout_ms and bind.dialect.name == 'postgresql':
            self.session.execute(text(f"SET LOCAL statement_timeout = {int(self.timeout_ms)}"))

    def fetch_transactions(self, facility_id: int, window: DateWindow, plan_id: int | None = None,
                           search: str | None = None) -> list[TransactionRecord]:
        stmt = self._statement(facility_id, window, plan_id, search)
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self._apply_timeout()
                rows = self.session.execute(stmt).all()
                break
            except OperationalError as exc:
                self.session.rollback()
                if attempt < attempts:
                    logger.warning("Transaction fetch for facility %s failed (attempt %s/%s): %s",
                                   facility_id, attempt, attempts, exc)
                    continue
                logger.error("Transaction fetch for facility %s failed", facility_id, exc_info=True)
                raise FetchFailure("Failed to fetch transactions", facility_id) from exc
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.error("Transaction fetch for facility %s failed", facility_id, exc_info=True)
                raise FetchFailure("Failed to fetch transactions", facility_id) from exc

        records = []
        for row in rows:
            try:
                records.append(parse_transaction_row(row))
            except InvalidTransactionRow as exc:
                logger.warning("Skipping transaction %s: %s", row.id, exc)
        return records
