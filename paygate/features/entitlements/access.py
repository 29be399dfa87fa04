"""
Access resolution and chat assignment.

has_access scans the owner's active entitlements newest-first and grants on
the first match. Stale subscriptions are expired lazily during the scan;
there is no background sweeper.

assign_to_chat binds an unscoped one-time purchase to a chat with a
conditional update, so two chats racing for the same purchase cannot both
win.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from paygate.core.logging import mask_id
from paygate.core.metrics import access_checks_total
from paygate.features.entitlements.models import (
    Entitlement,
    EntitlementStatus,
    Owner,
    PlanId,
    utcnow,
)
from paygate.features.entitlements.store import EntitlementStore

logger = logging.getLogger("paygate")


class AccessResolver:
    def __init__(self, store: EntitlementStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def has_access(self, owner: Owner, chat_id: Optional[str] = None) -> bool:
        candidates = self.store.find_active_by_owner(owner)
        now = self.clock()
        for entitlement in candidates:
            # A row without a confirmed payment never grants anything
            if not entitlement.has_payment_reference:
                continue
            if self._grants(entitlement, chat_id, now):
                access_checks_total.inc(labels={"result": "granted"})
                return True
        access_checks_total.inc(labels={"result": "denied"})
        return False

    def has_active_subscription(self, owner: Owner) -> bool:
        now = self.clock()
        for entitlement in self.store.find_active_by_owner(owner):
            if not entitlement.has_payment_reference or not entitlement.plan_id.is_subscription:
                continue
            if self._subscription_live(entitlement, now):
                return True
        return False

    def _grants(self, entitlement: Entitlement, chat_id: Optional[str], now: datetime) -> bool:
        plan = entitlement.plan_id
        if plan is PlanId.ONE_TIME:
            if not chat_id:
                return False
            return entitlement.chat_id is None or entitlement.chat_id == chat_id
        if plan is PlanId.WEEKLY or plan is PlanId.MONTHLY:
            return self._subscription_live(entitlement, now)
        raise ValueError(f"Unhandled plan: {plan!r}")

    def _subscription_live(self, entitlement: Entitlement, now: datetime) -> bool:
        if entitlement.expires_at is None:
            logger.warning(
                "access.subscription_missing_expiry",
                extra={"entitlement_id": entitlement.id, "plan_id": entitlement.plan_id.value},
            )
            return False
        if now < entitlement.expires_at:
            return True
        # Conditional write: a concurrent reader may already have expired it
        self.store.update_status(
            entitlement.id, EntitlementStatus.EXPIRED, expected=EntitlementStatus.ACTIVE
        )
        logger.info(
            "access.subscription_expired",
            extra={"entitlement_id": entitlement.id, "expires_at": entitlement.expires_at.isoformat()},
        )
        return False


class AssignmentService:
    def __init__(self, store: EntitlementStore):
        self.store = store

    def assign_to_chat(self, owner: Owner, chat_id: str) -> Optional[str]:
        """Claim one unbound one-time entitlement for ``chat_id``.

        Returns the bound entitlement id, or None when nothing was available
        (e.g. access came from a subscription). Re-unlocking a chat that
        already holds a one-time purchase returns that purchase's id and
        claims nothing new.
        """
        if not chat_id:
            raise ValueError("chat_id is required")

        for entitlement in self.store.find_active_by_owner(owner, plan=PlanId.ONE_TIME):
            if entitlement.chat_id == chat_id and entitlement.has_payment_reference:
                return entitlement.id

        claimed = self.store.claim_unassigned(owner, chat_id)
        if claimed is None:
            logger.info(
                "assignment.nothing_to_claim",
                extra={"owner": mask_id(owner.identifier), "chat_id": mask_id(chat_id)},
            )
        else:
            logger.info(
                "assignment.claimed",
                extra={"entitlement_id": claimed, "chat_id": mask_id(chat_id)},
            )
        return claimed
