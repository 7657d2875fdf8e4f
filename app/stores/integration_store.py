"""AdPulse — Integration Store.

Credential store and sync-status state machine over the ``integrations``
table. Every write is a conditional UPDATE: status transitions are guarded by
the current status, token writes by the row ``version``. A write that matches
zero rows lost a race and reports ``False`` to the caller.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.logging import get_logger
from app.core.timeutil import utcnow
from app.models.integration_models import Integration, SyncStatus

logger = get_logger("stores.integrations")


class IntegrationStore:
    """Persisted integration rows, shared by workers, OAuth and the API."""

    def __init__(self, engine: Engine):
        self.engine = engine

    # ── Reads ──

    def get(self, integration_id: int) -> Optional[Integration]:
        with Session(self.engine) as session:
            return session.get(Integration, integration_id)

    def list_active(self, tenant_id: Optional[str] = None) -> List[Integration]:
        """Active integrations for one tenant, or for every tenant when None."""
        with Session(self.engine) as session:
            query = select(Integration).where(Integration.active == True)  # noqa: E712
            if tenant_id is not None:
                query = query.where(Integration.tenant_id == tenant_id)
            return list(session.exec(query.order_by(Integration.id)).all())

    def find(
        self, tenant_id: str, provider: str, external_account_id: str
    ) -> Optional[Integration]:
        with Session(self.engine) as session:
            return session.exec(
                select(Integration).where(
                    Integration.tenant_id == tenant_id,
                    Integration.provider == provider,
                    Integration.external_account_id == external_account_id,
                )
            ).first()

    # ── Connection lifecycle ──

    def upsert_connection(
        self,
        tenant_id: str,
        provider: str,
        external_account_id: str,
        external_account_name: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
    ) -> Integration:
        """Create the integration, or re-authorize an existing one in place.

        Re-authorization installs the new credential, reactivates the row and
        clears a previous error, all in the same write.
        """
        existing = self.find(tenant_id, provider, external_account_id)
        if existing is None:
            try:
                with Session(self.engine) as session:
                    integration = Integration(
                        tenant_id=tenant_id,
                        provider=provider,
                        external_account_id=external_account_id,
                        external_account_name=external_account_name,
                        access_token=access_token,
                        refresh_token=refresh_token,
                        token_expires_at=token_expires_at,
                    )
                    session.add(integration)
                    session.commit()
                    session.refresh(integration)
                    logger.info(
                        f"Integration created for {provider} account {external_account_id}",
                        extra={"integration_id": integration.id, "tenant_id": tenant_id},
                    )
                    return integration
            except IntegrityError:
                # Concurrent callback for the same account won the insert
                existing = self.find(tenant_id, provider, external_account_id)
                if existing is None:
                    raise

        values = {
            "external_account_name": external_account_name
            or existing.external_account_name,
            "access_token": access_token,
            "token_expires_at": token_expires_at,
            "active": True,
            "updated_at": utcnow(),
            "version": Integration.version + 1,
        }
        if refresh_token:
            values["refresh_token"] = refresh_token
        with Session(self.engine) as session:
            session.execute(
                update(Integration).where(Integration.id == existing.id).values(**values)
            )
            # Clearing the error must not stomp on a sync that is running right now
            session.execute(
                update(Integration)
                .where(
                    Integration.id == existing.id,
                    Integration.sync_status == SyncStatus.ERROR.value,
                )
                .values(sync_status=SyncStatus.IDLE.value, last_error=None)
            )
            session.commit()
        logger.info(
            f"Integration re-authorized for {provider} account {external_account_id}",
            extra={"integration_id": existing.id, "tenant_id": tenant_id},
        )
        return self.get(existing.id)

    def deactivate(self, integration_id: int) -> bool:
        """User-initiated disconnect. History stays; the row is never deleted."""
        return self._update(
            Integration.id == integration_id,
            active=False,
        )

    # ── Credential writes ──

    def save_tokens(
        self,
        integration_id: int,
        expected_version: int,
        access_token: str,
        token_expires_at: Optional[datetime],
        refresh_token: Optional[str] = None,
    ) -> bool:
        """Persist a refreshed credential iff nobody wrote the row since it was read."""
        values = {"access_token": access_token, "token_expires_at": token_expires_at}
        if refresh_token:
            values["refresh_token"] = refresh_token
        return self._update(
            Integration.id == integration_id,
            Integration.version == expected_version,
            **values,
        )

    # ── Status state machine ──

    def try_claim(self, integration_id: int) -> bool:
        """Atomically move to ``syncing``. False when another worker holds it."""
        now = utcnow()
        claimed = self._update(
            Integration.id == integration_id,
            Integration.sync_status != SyncStatus.SYNCING.value,
            sync_status=SyncStatus.SYNCING.value,
            sync_started_at=now,
        )
        if not claimed:
            logger.info(
                "Integration already syncing; claim refused",
                extra={"integration_id": integration_id},
            )
        return claimed

    def mark_idle(self, integration_id: int) -> bool:
        """Successful run: settle to ``idle`` and stamp last_sync_at."""
        now = utcnow()
        return self._update(
            Integration.id == integration_id,
            Integration.sync_status == SyncStatus.SYNCING.value,
            sync_status=SyncStatus.IDLE.value,
            sync_started_at=None,
            last_sync_at=now,
            last_error=None,
        )

    def mark_error(self, integration_id: int, message: str) -> bool:
        """Failed run: ``error`` with last_sync_at left at the last success."""
        return self._update(
            Integration.id == integration_id,
            Integration.sync_status == SyncStatus.SYNCING.value,
            sync_status=SyncStatus.ERROR.value,
            sync_started_at=None,
            last_error=message[:1000],
        )

    def release_stale_claims(self, older_than: datetime) -> int:
        """Drop ``syncing`` locks whose worker died before reconciling."""
        with Session(self.engine) as session:
            result = session.execute(
                update(Integration)
                .where(
                    Integration.sync_status == SyncStatus.SYNCING.value,
                    Integration.sync_started_at < older_than,
                )
                .values(
                    sync_status=SyncStatus.ERROR.value,
                    sync_started_at=None,
                    last_error="Sync interrupted before completion",
                    updated_at=utcnow(),
                    version=Integration.version + 1,
                )
            )
            session.commit()
            released = result.rowcount or 0
        if released:
            logger.warning(f"Released {released} stale syncing claims")
        return released

    # ── Internals ──

    def _update(self, *conditions, **values) -> bool:
        values["updated_at"] = utcnow()
        values["version"] = Integration.version + 1
        with Session(self.engine) as session:
            result = session.execute(
                update(Integration).where(*conditions).values(**values)
            )
            session.commit()
            return result.rowcount == 1
