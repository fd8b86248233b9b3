from __future__ import annotations
import json
import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import delete, select, update as sql_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from integrations.db.models import IntegrationCredentialRow
from integrations.domain import CredentialKey, ErrorClass, IntegrationCredential, as_utc
from integrations.services.crypto import CryptoError, TokenCipher

logger = logging.getLogger(__name__)

Mutator = Callable[[IntegrationCredential], Optional[IntegrationCredential]]


class CorruptCredentialError(RuntimeError):
    def __init__(self, key: CredentialKey, reason: str):
        super().__init__(f"stored credential {key} is unreadable: {reason}")
        self.key = key
        self.reason = reason


def _scope(scope_key: str | None) -> str:
    return scope_key or ""


class CredentialStore:
    """
    One row per (user_id, provider, scope_key). Pure persistence: callers decide what
    to write. Secrets are encrypted on the way in and decrypted on the way out.
    """

    def __init__(self, session_factory: sessionmaker, cipher: TokenCipher):
        self._sessions = session_factory
        self._cipher = cipher

    @staticmethod
    def _by_key(user_id: str, provider: str, scope_key: str | None):
        return select(IntegrationCredentialRow).where(
            IntegrationCredentialRow.user_id == user_id,
            IntegrationCredentialRow.provider == provider,
            IntegrationCredentialRow.scope_key == _scope(scope_key),
        )

    def get(self, user_id: str, provider: str, scope_key: str | None = None) -> IntegrationCredential | None:
        with self._sessions() as db:
            row = db.execute(self._by_key(user_id, provider, scope_key)).scalar_one_or_none()
            return self._to_record(row) if row else None

    def list_by_user(self, user_id: str, provider: str) -> list[IntegrationCredential]:
        stmt = (
            select(IntegrationCredentialRow)
            .where(IntegrationCredentialRow.user_id == user_id, IntegrationCredentialRow.provider == provider)
            .order_by(IntegrationCredentialRow.scope_key)
        )
        with self._sessions() as db:
            return [self._to_record(r) for r in db.execute(stmt).scalars()]

    def list_keys(self, provider: str | None = None, user_id: str | None = None) -> list[CredentialKey]:
        stmt = select(
            IntegrationCredentialRow.user_id,
            IntegrationCredentialRow.provider,
            IntegrationCredentialRow.scope_key,
        ).order_by(IntegrationCredentialRow.id)
        if provider:
            stmt = stmt.where(IntegrationCredentialRow.provider == provider)
        if user_id:
            stmt = stmt.where(IntegrationCredentialRow.user_id == user_id)
        with self._sessions() as db:
            return [
                CredentialKey(user_id=u, provider=p, scope_key=s or None)
                for u, p, s in db.execute(stmt)
            ]

    def default_scope(self, user_id: str, provider: str) -> str | None:
        """Scope key of the connection marked default, else the oldest scoped one; None if there are none."""
        stmt = (
            select(IntegrationCredentialRow.scope_key)
            .where(
                IntegrationCredentialRow.user_id == user_id,
                IntegrationCredentialRow.provider == provider,
                IntegrationCredentialRow.scope_key != "",
            )
            .order_by(IntegrationCredentialRow.is_default.desc(), IntegrationCredentialRow.id)
            .limit(1)
        )
        with self._sessions() as db:
            return db.execute(stmt).scalar_one_or_none() or None

    def set_default(self, user_id: str, provider: str, scope_key: str) -> bool:
        """Mark one scoped connection as the default and unmark the rest, in one transaction."""
        mine = (IntegrationCredentialRow.user_id == user_id, IntegrationCredentialRow.provider == provider)
        is_target = IntegrationCredentialRow.scope_key == _scope(scope_key)
        with self._sessions.begin() as db:
            found = db.execute(
                sql_update(IntegrationCredentialRow)
                .where(*mine, is_target)
                .values(is_default=True, version=IntegrationCredentialRow.version + 1)
            ).rowcount > 0
            if found:
                db.execute(
                    sql_update(IntegrationCredentialRow)
                    .where(*mine, ~is_target, IntegrationCredentialRow.is_default.is_(True))
                    .values(is_default=False, version=IntegrationCredentialRow.version + 1)
                )
            return found

    def upsert(self, credential: IntegrationCredential) -> IntegrationCredential:
        if not credential.access_token:
            raise ValueError("access_token required")
        for attempt in (1, 2):
            try:
                with self._sessions.begin() as db:
                    stmt = self._by_key(credential.user_id, credential.provider, credential.scope_key)
                    row = db.execute(stmt.with_for_update()).scalar_one_or_none()
                    if row is None:
                        row = IntegrationCredentialRow(
                            user_id=credential.user_id,
                            provider=credential.provider,
                            scope_key=_scope(credential.scope_key),
                            version=0,
                            connection_id=uuid.uuid4().hex,
                        )
                        db.add(row)
                    self._write(row, credential)
                    db.flush()
                    return self._to_record(row)
            except IntegrityError:
                # another writer inserted the same key between our select and insert
                if attempt == 2:
                    raise
                logger.info("upsert lost insert race; retrying as update",
                            extra={"credential": str(credential.key)})
        raise AssertionError("unreachable")

    def update(self, user_id: str, provider: str, scope_key: str | None, mutate: Mutator) -> IntegrationCredential | None:
        """
        Atomic read-modify-write. The row is re-read under lock and `mutate` receives the
        current record, never a copy captured earlier. Returns None when the row is gone;
        if `mutate` returns None the row is left untouched.
        """
        with self._sessions.begin() as db:
            row = db.execute(self._by_key(user_id, provider, scope_key).with_for_update()).scalar_one_or_none()
            if row is None:
                return None
            current = self._to_record(row)
            updated = mutate(current)
            if updated is None or updated == current:
                return current
            self._write(row, updated)
            db.flush()
            return self._to_record(row)

    def flag_unreadable(self, key: CredentialKey, message: str, at: datetime) -> bool:
        """Health columns only; used when the secrets themselves cannot be decoded."""
        stmt = (
            sql_update(IntegrationCredentialRow)
            .where(
                IntegrationCredentialRow.user_id == key.user_id,
                IntegrationCredentialRow.provider == key.provider,
                IntegrationCredentialRow.scope_key == _scope(key.scope_key),
            )
            .values(
                healthy=False,
                last_error_message=message,
                last_error_kind=ErrorClass.UNKNOWN.value,
                last_error_at=at,
                version=IntegrationCredentialRow.version + 1,
            )
        )
        with self._sessions.begin() as db:
            return db.execute(stmt).rowcount > 0

    def delete(self, user_id: str, provider: str, scope_key: str | None = None) -> bool:
        stmt = delete(IntegrationCredentialRow).where(
            IntegrationCredentialRow.user_id == user_id,
            IntegrationCredentialRow.provider == provider,
            IntegrationCredentialRow.scope_key == _scope(scope_key),
        )
        with self._sessions.begin() as db:
            return db.execute(stmt).rowcount > 0

    # ---- mapping -------------------------------------------------------------

    def _write(self, row: IntegrationCredentialRow, cred: IntegrationCredential) -> None:
        row.access_token_enc = self._cipher.encrypt(cred.access_token)
        refresh_enc = self._cipher.encrypt(cred.refresh_token)
        if refresh_enc:
            row.refresh_token_enc = refresh_enc
        row.expires_at = cred.expires_at
        row.scopes_json = json.dumps(sorted(cred.granted_scopes))
        row.account_identifier = cred.account_identifier
        row.default_destination = cred.default_destination
        row.is_default = cred.is_default
        row.healthy = cred.healthy
        row.last_error_message = cred.last_error_message
        row.last_error_kind = cred.last_error_kind.value if cred.last_error_kind else None
        row.last_error_at = cred.last_error_at
        row.last_refreshed_at = cred.last_refreshed_at
        row.version = (row.version or 0) + 1

    def _to_record(self, row: IntegrationCredentialRow) -> IntegrationCredential:
        key = CredentialKey(user_id=row.user_id, provider=row.provider, scope_key=row.scope_key or None)
        try:
            access_token = self._cipher.decrypt(row.access_token_enc)
            refresh_token = self._cipher.decrypt(row.refresh_token_enc)
        except CryptoError as e:
            raise CorruptCredentialError(key, str(e)) from e
        if not access_token:
            raise CorruptCredentialError(key, "access token missing")
        try:
            scopes = json.loads(row.scopes_json) if row.scopes_json else []
        except ValueError as e:
            raise CorruptCredentialError(key, "scopes are not valid JSON") from e
        try:
            kind = ErrorClass(row.last_error_kind) if row.last_error_kind else None
        except ValueError:
            kind = ErrorClass.UNKNOWN

        return IntegrationCredential(
            user_id=row.user_id,
            provider=row.provider,
            scope_key=row.scope_key or None,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=as_utc(row.expires_at),
            granted_scopes=frozenset(scopes),
            account_identifier=row.account_identifier,
            default_destination=row.default_destination,
            is_default=bool(row.is_default),
            healthy=bool(row.healthy),
            last_error_message=row.last_error_message,
            last_error_kind=kind,
            last_error_at=as_utc(row.last_error_at),
            last_refreshed_at=as_utc(row.last_refreshed_at),
            version=row.version or 0,
            connection_id=row.connection_id,
        )
