"""
Identity migration (device -> user).

Runs on both sign-up and sign-in. Every registered ownership step runs in a
single transaction so a device's resources move all together or not at all.
"""

import logging
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from paygate.core.database import get_db_session
from paygate.core.errors import DatabaseError, ValidationError
from paygate.core.logging import log_event
from paygate.features.entitlements.store import EntitlementStore

logger = logging.getLogger("paygate")

# step(session, device_id, user_id) -> rows moved
MigrationStep = Callable[[object, str, str], int]


class IdentityMigrator:
    def __init__(
        self,
        store: EntitlementStore,
        session_factory: Callable = get_db_session,
        extra_steps: Optional[List[MigrationStep]] = None,
    ):
        self.store = store
        self.session_factory = session_factory
        self.extra_steps: List[MigrationStep] = list(extra_steps or [])

    def register_step(self, step: MigrationStep) -> None:
        """Add another owned-resource move to the migration transaction."""
        self.extra_steps.append(step)

    def migrate(self, device_id: str, user_id: str) -> int:
        """Reassign everything owned by ``device_id`` to ``user_id``.

        Returns the number of entitlements moved. Raises DatabaseError when
        the transaction fails, in which case nothing moved.
        """
        if not device_id or not user_id:
            raise ValidationError("device_id and user_id are required")

        try:
            with self.session_factory() as session:
                moved = self.store.reassign_owner(device_id, user_id, session=session)
                for step in self.extra_steps:
                    step(session, device_id, user_id)
        except SQLAlchemyError as exc:
            raise DatabaseError("Identity migration failed") from exc

        log_event(
            "info",
            "migration.completed",
            device_id=device_id,
            user_id=user_id,
            extra={"entitlements_moved": moved},
        )
        return moved

    def migrate_on_auth(self, device_id: Optional[str], user_id: str) -> bool:
        """Sign-up/sign-in hook. Never raises: the account is valid without the migrated data."""
        if not device_id:
            return True
        try:
            self.migrate(device_id, user_id)
        except Exception as exc:
            log_event(
                "warning",
                "migration.failed",
                device_id=device_id,
                user_id=user_id,
                error_code=getattr(exc, "code", "migration_failed"),
                extra={"error": str(exc)},
            )
            return False
        return True
