"""
Entitlement store.

Query/update façade over the ``entitlements`` table. Owns the idempotency
invariant: at most one row per stripe_payment_intent_id. The unique
constraint backs the check-then-insert, and a uniqueness violation is
reported as AlreadyExists instead of an error.
"""

import logging
from contextlib import contextmanager
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from paygate.core.database import entitlements, get_db_session
from paygate.core.errors import DatabaseError
from paygate.core.logging import mask_id
from paygate.features.entitlements.models import (
    AlreadyExists,
    Entitlement,
    EntitlementStatus,
    InsertResult,
    Inserted,
    NewEntitlement,
    Owner,
    PlanId,
    ensure_utc,
)

logger = logging.getLogger("paygate")


def _owner_clause(owner: Owner):
    if owner.user_id is not None:
        return entitlements.c.user_id == owner.user_id
    return entitlements.c.device_id == owner.device_id


def _row_to_entitlement(row) -> Entitlement:
    m = row._mapping
    return Entitlement(
        id=m["id"],
        owner=Owner(device_id=m["device_id"], user_id=m["user_id"]),
        plan_id=PlanId.parse(m["plan_id"]),
        stripe_payment_intent_id=m["stripe_payment_intent_id"],
        stripe_customer_id=m["stripe_customer_id"],
        status=EntitlementStatus(m["status"]),
        purchased_at=ensure_utc(m["purchased_at"]),
        expires_at=ensure_utc(m["expires_at"]),
        chat_id=m["chat_id"],
    )


@contextmanager
def _db_errors(action: str):
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("entitlements.db_error", extra={"action": action, "error": str(exc)})
        raise DatabaseError(f"Entitlement store failure during {action}") from exc


class EntitlementStore:
    def __init__(self, session_factory: Callable = get_db_session):
        self.session_factory = session_factory

    def find_by_payment_intent_id(self, payment_intent_id: str) -> Optional[Entitlement]:
        if not payment_intent_id:
            return None
        with _db_errors("find_by_payment_intent_id"):
            with self.session_factory() as session:
                row = session.execute(
                    select(entitlements).where(
                        entitlements.c.stripe_payment_intent_id == payment_intent_id
                    )
                ).fetchone()
        return _row_to_entitlement(row) if row else None

    def insert(self, new: NewEntitlement) -> InsertResult:
        """Idempotent create keyed on the payment-intent id."""
        if not new.stripe_payment_intent_id:
            raise ValueError("stripe_payment_intent_id is required")

        existing = self.find_by_payment_intent_id(new.stripe_payment_intent_id)
        if existing:
            return AlreadyExists(existing.id)

        entitlement_id = str(uuid4())
        try:
            with self.session_factory() as session:
                session.execute(
                    entitlements.insert().values(
                        id=entitlement_id,
                        device_id=new.owner.device_id,
                        user_id=new.owner.user_id,
                        plan_id=new.plan_id.value,
                        stripe_payment_intent_id=new.stripe_payment_intent_id,
                        stripe_customer_id=new.stripe_customer_id,
                        status=new.status.value,
                        purchased_at=new.purchased_at,
                        expires_at=new.expires_at,
                        chat_id=new.chat_id,
                    )
                )
        except IntegrityError as exc:
            # Lost the race against the other reconciliation path
            winner = self.find_by_payment_intent_id(new.stripe_payment_intent_id)
            if winner:
                logger.info(
                    "entitlements.insert_conflict",
                    extra={"payment_intent_id": new.stripe_payment_intent_id, "entitlement_id": winner.id},
                )
                return AlreadyExists(winner.id)
            raise DatabaseError("Entitlement insert violated a constraint") from exc
        except SQLAlchemyError as exc:
            raise DatabaseError("Entitlement store failure during insert") from exc

        return Inserted(entitlement_id)

    def find_active_by_owner(
        self,
        owner: Owner,
        plan: Optional[PlanId] = None,
        unassigned_only: bool = False,
        oldest_first: bool = False,
    ) -> List[Entitlement]:
        """Active rows for ``owner``, newest purchase first unless ``oldest_first``."""
        conditions = [_owner_clause(owner), entitlements.c.status == EntitlementStatus.ACTIVE.value]
        if plan is not None:
            conditions.append(entitlements.c.plan_id == plan.value)
        if unassigned_only:
            conditions.append(entitlements.c.chat_id.is_(None))

        order = entitlements.c.purchased_at.asc() if oldest_first else entitlements.c.purchased_at.desc()
        with _db_errors("find_active_by_owner"):
            with self.session_factory() as session:
                rows = session.execute(
                    select(entitlements).where(and_(*conditions)).order_by(order, entitlements.c.id)
                ).fetchall()
        return [_row_to_entitlement(row) for row in rows]

    def find_by_owner(self, owner: Owner) -> List[Entitlement]:
        with _db_errors("find_by_owner"):
            with self.session_factory() as session:
                rows = session.execute(
                    select(entitlements)
                    .where(_owner_clause(owner))
                    .order_by(entitlements.c.purchased_at.desc())
                ).fetchall()
        return [_row_to_entitlement(row) for row in rows]

    def latest_customer_id(self, owner: Owner) -> Optional[str]:
        """Customer reference from the owner's most recent purchase that has one."""
        with _db_errors("latest_customer_id"):
            with self.session_factory() as session:
                row = session.execute(
                    select(entitlements.c.stripe_customer_id)
                    .where(and_(_owner_clause(owner), entitlements.c.stripe_customer_id.isnot(None)))
                    .order_by(entitlements.c.purchased_at.desc())
                    .limit(1)
                ).fetchone()
        return row[0] if row else None

    def update_status(
        self,
        entitlement_id: str,
        status: EntitlementStatus,
        expected: Optional[EntitlementStatus] = None,
    ) -> bool:
        """Set status; with ``expected`` the write only happens from that status."""
        conditions = [entitlements.c.id == entitlement_id]
        if expected is not None:
            conditions.append(entitlements.c.status == expected.value)
        with _db_errors("update_status"):
            with self.session_factory() as session:
                result = session.execute(
                    update(entitlements).where(and_(*conditions)).values(status=status.value)
                )
        return result.rowcount > 0

    def assign_chat(self, entitlement_id: str, chat_id: str) -> bool:
        """Bind a chat to an unbound active one-time row. False if someone else got there first."""
        with _db_errors("assign_chat"):
            with self.session_factory() as session:
                result = session.execute(
                    update(entitlements)
                    .where(
                        and_(
                            entitlements.c.id == entitlement_id,
                            entitlements.c.plan_id == PlanId.ONE_TIME.value,
                            entitlements.c.status == EntitlementStatus.ACTIVE.value,
                            entitlements.c.chat_id.is_(None),
                        )
                    )
                    .values(chat_id=chat_id)
                )
        return result.rowcount == 1

    def claim_unassigned(self, owner: Owner, chat_id: str) -> Optional[str]:
        """Compare-and-swap claim of the owner's oldest unbound one-time entitlement.

        Returns the claimed id, or None when no unbound entitlement remains.
        """
        candidates = self.find_active_by_owner(
            owner, plan=PlanId.ONE_TIME, unassigned_only=True, oldest_first=True
        )
        for candidate in candidates:
            if not candidate.has_payment_reference:
                continue
            if self.assign_chat(candidate.id, chat_id):
                return candidate.id
            logger.info(
                "entitlements.claim_lost",
                extra={"entitlement_id": candidate.id, "chat_id": mask_id(chat_id)},
            )
        return None

    def reassign_owner(self, device_id: str, user_id: str, session=None) -> int:
        """Move every row owned by ``device_id`` to ``user_id`` in one UPDATE.

        Runs inside ``session`` when given so callers can bundle other
        ownership moves into the same transaction.
        """
        stmt = (
            update(entitlements)
            .where(entitlements.c.device_id == device_id)
            .values(user_id=user_id, device_id=None)
        )
        if session is not None:
            return session.execute(stmt).rowcount
        with _db_errors("reassign_owner"):
            with self.session_factory() as own_session:
                result = own_session.execute(stmt)
        return result.rowcount

    def cancel_by_payment_intent_id(self, payment_intent_id: str) -> int:
        with _db_errors("cancel_by_payment_intent_id"):
            with self.session_factory() as session:
                result = session.execute(
                    update(entitlements)
                    .where(
                        and_(
                            entitlements.c.stripe_payment_intent_id == payment_intent_id,
                            entitlements.c.status != EntitlementStatus.CANCELLED.value,
                        )
                    )
                    .values(status=EntitlementStatus.CANCELLED.value)
                )
        return result.rowcount
