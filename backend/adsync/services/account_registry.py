"""Account registry for advertiser tenants.

WHAT:
    CRUD over ClientAccount rows plus the sync-status state machine:

        pending/success/failed ──▶ syncing ──▶ success | failed
        failed ──▶ pending                      (operator reset)

WHY:
    - Credentials are encrypted on every write and decrypted only on
      `get_by_id`, right before the orchestrator builds an API client.
    - `update_sync_status` is the only sanctioned writer of sync_status,
      sync_error and last_sync_at. The move to `syncing` is a compare-and-set
      in SQL so two processes can never run the same account at once; a
      `syncing` row older than SYNC_STALE_AFTER_SECONDS is treated as left
      behind by a crashed worker and may be taken over.

REFERENCES:
    - adsync/security.py (encrypt_secret / decrypt_secret)
    - adsync/services/meta_sync_service.py (drives the status transitions)
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional, Union
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adsync.config import get_settings
from adsync.models import ClientAccount, SyncStatusEnum, utcnow
from adsync.schemas import (
    AccountSummary,
    ClientAccountCreate,
    ClientAccountOut,
    ClientAccountUpdate,
    normalize_meta_account_id,
)
from adsync.security import decrypt_secret, encrypt_secret

logger = logging.getLogger(__name__)

AccountId = Union[UUID, str]

# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS: Dict[SyncStatusEnum, FrozenSet[SyncStatusEnum]] = {
    SyncStatusEnum.syncing: frozenset({SyncStatusEnum.pending, SyncStatusEnum.success, SyncStatusEnum.failed}),
    SyncStatusEnum.success: frozenset({SyncStatusEnum.syncing}),
    SyncStatusEnum.failed: frozenset({SyncStatusEnum.syncing}),
    SyncStatusEnum.pending: frozenset({SyncStatusEnum.failed}),
}


class AccountRegistryError(Exception):
    """Base exception for registry failures."""
    pass


class DuplicateAccountError(AccountRegistryError):
    """Raised when a Meta account id is already registered."""
    pass


class AccountNotFoundError(AccountRegistryError):
    """Raised when no client account has the given id."""
    pass


class InvalidSyncTransitionError(AccountRegistryError):
    """Raised for a sync status change outside the state machine."""
    pass


class SyncInProgressError(InvalidSyncTransitionError):
    """Raised when the account is already `syncing` (and not stale)."""
    pass


def _coerce_id(account_id: AccountId) -> UUID:
    if isinstance(account_id, UUID):
        return account_id
    try:
        return UUID(str(account_id))
    except ValueError as exc:
        raise AccountNotFoundError(f"Invalid client account id: {account_id!r}") from exc


class AccountRegistry:
    """Session-bound access to client accounts.

    Usage:
        ```python
        registry = AccountRegistry(db)
        for summary in registry.list_active():
            account = registry.get_by_id(summary.id)   # decrypted credentials
        ```
    """

    def __init__(self, db: Session, stale_after_seconds: Optional[int] = None):
        self.db = db
        self.stale_after = timedelta(
            seconds=stale_after_seconds if stale_after_seconds is not None
            else get_settings().SYNC_STALE_AFTER_SECONDS
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_active(self) -> List[AccountSummary]:
        return self._list(active_only=True)

    def list_all(self) -> List[AccountSummary]:
        """Every registered account, deactivated tenants included (operator views)."""
        return self._list(active_only=False)

    def _list(self, active_only: bool) -> List[AccountSummary]:
        query = select(ClientAccount)
        if active_only:
            query = query.where(ClientAccount.is_active.is_(True))
        rows = self.db.execute(
            query.order_by(ClientAccount.client_name, ClientAccount.meta_account_id)
        ).scalars()
        return [AccountSummary.model_validate(row) for row in rows]

    def get_by_id(self, account_id: AccountId) -> Optional[ClientAccountOut]:
        """Return the account with decrypted credentials, or None.

        Raises:
            DecryptionError: Stored credential cannot be decrypted (wrong
                ENCRYPTION_KEY or tampered row). Never silently ignored.
        """
        row = self._get_row(account_id)
        return self._to_out(row) if row is not None else None

    def get_summary(self, account_id: AccountId) -> Optional[AccountSummary]:
        """Registry row without touching credentials."""
        row = self._get_row(account_id)
        return AccountSummary.model_validate(row) if row is not None else None

    def get_by_meta_account_id(self, meta_account_id: str) -> Optional[ClientAccountOut]:
        row = self.db.execute(
            select(ClientAccount).where(
                ClientAccount.meta_account_id == normalize_meta_account_id(meta_account_id)
            )
        ).scalar_one_or_none()
        return self._to_out(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, payload: ClientAccountCreate) -> ClientAccountOut:
        """Register a tenant; credentials are encrypted before they touch the DB.

        Raises:
            DuplicateAccountError: meta_account_id already registered
        """
        existing = self.db.execute(
            select(ClientAccount.id).where(ClientAccount.meta_account_id == payload.meta_account_id)
        ).scalar_one_or_none()
        if existing is not None:
            raise DuplicateAccountError(f"Meta account {payload.meta_account_id} is already registered")

        settings = get_settings()
        label = f"client_account:{payload.meta_account_id}"
        row = ClientAccount(
            client_name=payload.client_name,
            meta_account_id=payload.meta_account_id,
            access_token_encrypted=encrypt_secret(payload.access_token.get_secret_value(), context=f"{label}:access"),
            refresh_token_encrypted=(
                encrypt_secret(payload.refresh_token.get_secret_value(), context=f"{label}:refresh")
                if payload.refresh_token and payload.refresh_token.get_secret_value() else None
            ),
            token_expires_at=payload.token_expires_at,
            timezone=payload.timezone or settings.DEFAULT_TIMEZONE,
            currency=(payload.currency or settings.DEFAULT_CURRENCY).upper(),
            is_active=payload.is_active,
            is_system_user=payload.is_system_user,
            business_name=payload.business_name,
            business_id=payload.business_id,
            contact_email=payload.contact_email,
            contact_name=payload.contact_name,
            sync_status=SyncStatusEnum.pending,
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError as exc:
            # Lost a race with a concurrent create of the same account
            self.db.rollback()
            raise DuplicateAccountError(f"Meta account {payload.meta_account_id} is already registered") from exc

        self.db.refresh(row)
        logger.info("[ACCOUNT_REGISTRY] Created client account %s (%s)", row.id, row.meta_account_id)
        return self._to_out(row)

    def update(self, account_id: AccountId, patch: ClientAccountUpdate) -> ClientAccountOut:
        """Apply a partial update. Passing access_token rotates the credential."""
        row = self._require_row(account_id)
        changes = patch.model_dump(exclude_unset=True)
        label = f"client_account:{row.meta_account_id}"

        if "access_token" in changes:
            token = patch.access_token.get_secret_value() if patch.access_token else ""
            if not token:
                raise ValueError("access_token cannot be cleared, deactivate the account instead")
            row.access_token_encrypted = encrypt_secret(token, context=f"{label}:access")
            changes.pop("access_token")
            logger.info("[ACCOUNT_REGISTRY] Access token rotated for %s", row.meta_account_id)
        if "refresh_token" in changes:
            token = patch.refresh_token.get_secret_value() if patch.refresh_token else ""
            row.refresh_token_encrypted = encrypt_secret(token, context=f"{label}:refresh") if token else None
            changes.pop("refresh_token")
        if changes.get("currency"):
            changes["currency"] = changes["currency"].upper()

        for field, value in changes.items():
            setattr(row, field, value)

        self.db.commit()
        self.db.refresh(row)
        return self._to_out(row)

    def rotate_credentials(
        self,
        account_id: AccountId,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> ClientAccountOut:
        patch = {"access_token": access_token}
        if expires_at is not None:
            patch["token_expires_at"] = expires_at
        if refresh_token is not None:
            patch["refresh_token"] = refresh_token
        return self.update(account_id, ClientAccountUpdate(**patch))

    def deactivate(self, account_id: AccountId) -> ClientAccountOut:
        """Soft delete: historical fact rows keep referencing the account."""
        logger.info("[ACCOUNT_REGISTRY] Deactivating client account %s", account_id)
        return self.update(account_id, ClientAccountUpdate(is_active=False))

    def update_sync_status(
        self,
        account_id: AccountId,
        status: Union[SyncStatusEnum, str],
        error: Optional[str] = None,
    ) -> None:
        """Move an account through the sync state machine and commit.

        Raises:
            AccountNotFoundError: Unknown account
            SyncInProgressError: → syncing while another run holds the account
            InvalidSyncTransitionError: Any other transition outside the machine
        """
        status = SyncStatusEnum(status)
        row_id = _coerce_id(account_id)
        current = self._require_row(row_id)
        previous = current.sync_status
        now = utcnow()

        allowed_from = ALLOWED_TRANSITIONS[status]
        condition = ClientAccount.sync_status.in_(allowed_from)
        values = {"sync_status": status, "updated_at": now}

        if status == SyncStatusEnum.syncing:
            cutoff = now - self.stale_after
            condition = or_(
                condition,
                ClientAccount.sync_started_at.is_(None),
                ClientAccount.sync_started_at < cutoff,
            )
            values.update(sync_started_at=now, sync_error=None)
        elif status == SyncStatusEnum.success:
            values.update(last_sync_at=now, sync_error=None)
        elif status == SyncStatusEnum.failed:
            values.update(sync_error=(error or "Sync failed without an error message")[:10_000])
        else:
            values.update(sync_error=None, sync_started_at=None)

        result = self.db.execute(
            update(ClientAccount)
            .where(ClientAccount.id == row_id, condition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount == 0:
            self.db.expire_all()
            latest = self._require_row(row_id).sync_status
            if status == SyncStatusEnum.syncing and latest == SyncStatusEnum.syncing:
                raise SyncInProgressError(f"Sync already in progress for account {row_id}")
            raise InvalidSyncTransitionError(
                f"Cannot move account {row_id} from {latest.value} to {status.value}"
            )

        if status == SyncStatusEnum.syncing and previous == SyncStatusEnum.syncing:
            logger.warning("[ACCOUNT_REGISTRY] Took over stale sync for account %s", row_id)
        logger.info(
            "[ACCOUNT_REGISTRY] Sync status %s -> %s for account %s",
            previous.value, status.value, row_id,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get_row(self, account_id: AccountId) -> Optional[ClientAccount]:
        try:
            row_id = _coerce_id(account_id)
        except AccountNotFoundError:
            return None
        return self.db.get(ClientAccount, row_id)

    def _require_row(self, account_id: AccountId) -> ClientAccount:
        row = self._get_row(account_id)
        if row is None:
            raise AccountNotFoundError(f"Client account {account_id} not found")
        return row

    def _to_out(self, row: ClientAccount) -> ClientAccountOut:
        label = f"client_account:{row.meta_account_id}"
        access_token = decrypt_secret(row.access_token_encrypted, context=f"{label}:access")
        refresh_token = (
            decrypt_secret(row.refresh_token_encrypted, context=f"{label}:refresh")
            if row.refresh_token_encrypted else None
        )
        summary = AccountSummary.model_validate(row).model_dump()
        return ClientAccountOut(
            **summary,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=row.token_expires_at,
            is_system_user=row.is_system_user,
            business_name=row.business_name,
            business_id=row.business_id,
            contact_email=row.contact_email,
            contact_name=row.contact_name,
            sync_started_at=row.sync_started_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )
