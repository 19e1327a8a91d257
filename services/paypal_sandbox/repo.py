"""SQLAlchemy persistence for the PayPal sandbox emulator.

Stores issued access tokens, checkout orders and payout batches so the
emulator behaves consistently across requests and worker processes.
The connection URL is read from ``SANDBOX_DATABASE_URL`` and defaults to a
local SQLite file.
"""

import os
import secrets
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, DateTime, String, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DATABASE_URL = os.getenv("SANDBOX_DATABASE_URL", "sqlite:///./paypal_sandbox.db")
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=_connect_args)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def remote_id(prefix: str = "") -> str:
    """PayPal-style id: 17 uppercase alphanumerics."""
    return prefix + uuid.uuid4().hex[: 17 - len(prefix)].upper()


class Base(DeclarativeBase):
    pass


class AccessToken(Base):
    __tablename__ = "access_tokens"

    token = mapped_column(String(64), primary_key=True)
    client_id = mapped_column(String(200), nullable=False)
    created_at = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class SandboxOrder(Base):
    """A checkout order.

    Attributes:
        id: Remote order id handed to the marketplace.
        status: ``CREATED``, ``APPROVED``, ``COMPLETED`` or ``DECLINED``.
        payer_email: Payer email from the create request, if any.
        body: The create request, echoed back on reads.
        capture_id: Id of the capture once the order is completed.
    """

    __tablename__ = "orders"

    id = mapped_column(String(32), primary_key=True, default=remote_id)
    status = mapped_column(String(20), nullable=False, default="CREATED")
    payer_email = mapped_column(String(254), nullable=False, default="")
    currency = mapped_column(String(3), nullable=False)
    amount = mapped_column(String(20), nullable=False)
    body = mapped_column(JSON, nullable=False, default=dict)
    capture_id = mapped_column(String(32), nullable=True)
    created_at = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class PayoutBatch(Base):
    """A payout batch, keyed by PayPal's batch id.

    ``sender_batch_id`` is unique: PayPal accepts a sender batch id once.
    """

    __tablename__ = "payout_batches"

    payout_batch_id = mapped_column(String(32), primary_key=True, default=remote_id)
    sender_batch_id = mapped_column(String(256), unique=True, nullable=False)
    status = mapped_column(String(20), nullable=False, default="PENDING")
    currency = mapped_column(String(3), nullable=False)
    amount = mapped_column(String(20), nullable=False)
    body = mapped_column(JSON, nullable=False, default=dict)
    created_at = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


@contextmanager
def get_session():
    with Session(engine) as s:
        yield s


class SandboxRepo:
    """Persistence operations used by the emulator endpoints."""

    def issue_token(self, client_id: str) -> str:
        token = secrets.token_urlsafe(32)
        with get_session() as s:
            s.add(AccessToken(token=token, client_id=client_id))
            s.commit()
        return token

    def token_valid(self, token: str) -> bool:
        with get_session() as s:
            return s.get(AccessToken, token) is not None

    def create_order(self, payer_email: str, currency: str, amount: str, body: dict) -> SandboxOrder:
        with get_session() as s:
            order = SandboxOrder(payer_email=payer_email, currency=currency, amount=amount, body=body)
            s.add(order)
            s.commit()
            s.refresh(order)
            s.expunge(order)
            return order

    def get_order(self, order_id: str) -> Optional[SandboxOrder]:
        with get_session() as s:
            order = s.get(SandboxOrder, order_id)
            if order is not None:
                s.expunge(order)
            return order

    def transition_order(self, order_id: str, allowed: set, to: str, **fields) -> Optional[SandboxOrder]:
        """Move an order to ``to`` if its status is in ``allowed``.

        The row is locked while it is checked, so two concurrent captures
        cannot both complete the order.

        Returns:
            The updated order, or None when the order is missing or in a
            status outside ``allowed``.
        """
        with get_session() as s:
            order = s.execute(
                select(SandboxOrder).where(SandboxOrder.id == order_id).with_for_update()
            ).scalars().first()
            if order is None or order.status not in allowed:
                return None
            order.status = to
            for name, value in fields.items():
                setattr(order, name, value)
            s.commit()
            s.refresh(order)
            s.expunge(order)
            return order

    def create_batch(self, sender_batch_id: str, currency: str, amount: str, body: dict):
        """Create a payout batch, or return the one already using ``sender_batch_id``.

        Returns:
            tuple[PayoutBatch, bool]: The batch and whether it was created.
        """
        with get_session() as s:
            try:
                batch = PayoutBatch(sender_batch_id=sender_batch_id, currency=currency, amount=amount, body=body)
                s.add(batch)
                s.commit()
                created = True
            except IntegrityError:
                s.rollback()
                batch = s.execute(
                    select(PayoutBatch).where(PayoutBatch.sender_batch_id == sender_batch_id)
                ).scalars().one()
                created = False
            s.refresh(batch)
            s.expunge(batch)
            return batch, created

    def find_batch_by_sender_id(self, sender_batch_id: str) -> Optional[PayoutBatch]:
        with get_session() as s:
            batch = s.execute(
                select(PayoutBatch).where(PayoutBatch.sender_batch_id == sender_batch_id)
            ).scalars().first()
            if batch is not None:
                s.expunge(batch)
            return batch

    def read_batch(self, payout_batch_id: str) -> Optional[PayoutBatch]:
        """Fetch a batch; a ``PENDING`` batch settles to ``SUCCESS`` on read."""
        with get_session() as s:
            batch = s.execute(
                select(PayoutBatch).where(PayoutBatch.payout_batch_id == payout_batch_id).with_for_update()
            ).scalars().first()
            if batch is None:
                return None
            if batch.status == "PENDING":
                batch.status = "SUCCESS"
                s.commit()
                s.refresh(batch)
            s.expunge(batch)
            return batch


Base.metadata.create_all(engine)
