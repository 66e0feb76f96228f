"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_passkey / _row_to_reset_token are the mappers.
Authenticators never touch SQL directly.

Result types: every lookup returns the entity or None. The store never raises
for "not found"; callers map None to the operational error that fits their
flow (Unauthorized for login, NotFound for account management, ...).

Uniqueness is enforced by the database, not by check-then-insert:
  - users.email: partial UNIQUE index over non-deleted rows, so a deleted
    account does not block re-registration with the same address.
  - users.google_id / users.github_id: UNIQUE. NULLs are distinct in both
    SQLite and PostgreSQL, so unlinked users never collide.
  - passkey_credentials.credential_id: PRIMARY KEY.
IntegrityError from any of these becomes ConflictError, so of two concurrent
inserts exactly one wins.

Security:
  All queries use bound parameters. No f-strings in SQL.

DB URL: Settings.database_url (SQLite for dev/tests, PostgreSQL in production).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import PasskeyCredential, PasswordResetToken, Provider, User, UserStatus
from core.errors import ConflictError

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False),  # always lower-cased
    Column("full_name", String(255), nullable=False),
    Column("password_hash", Text),  # NULL for OAuth/passkey-only users
    Column("google_id", String(255), unique=True),
    Column("github_id", String(255), unique=True),
    Column("avatar_url", Text),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("status", String(30), nullable=False, server_default="active"),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    Column("deleted_at", String(32)),
)

Index(
    "uq_users_email_live",
    _users.c.email,
    unique=True,
    sqlite_where=_users.c.deleted_at.is_(None),
    postgresql_where=_users.c.deleted_at.is_(None),
)

_passkeys = Table(
    "passkey_credentials",
    _metadata,
    Column("credential_id", String(512), primary_key=True),  # base64url
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False, index=True),
    Column("webauthn_user_id", String(128), nullable=False),
    Column("public_key", Text, nullable=False),  # base64url COSE key
    Column("counter", Integer, nullable=False, server_default="0"),
    Column("transports", Text, nullable=False, server_default="[]"),  # JSON list
    Column("backed_up", Boolean, nullable=False, server_default="0"),
    Column("device_name", String(255)),
    Column("created_at", String(32), nullable=False),
    Column("last_used_at", String(32)),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), ForeignKey("users.id"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys on every new SQLite connection.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _provider_column(provider: Provider):
    if provider is Provider.GOOGLE:
        return _users.c.google_id
    return _users.c.github_id


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User, PasskeyCredential, and PasswordResetToken.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        user = store.create_user(User(email="a@x.com", full_name="A", password_hash=...))
        store.get_by_email("A@X.COM")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps filled in.

        Raises ConflictError if the email (among live users) or a provider id
        is already taken -- including when a concurrent request won the race.
        """
        now = _now_iso()
        user_id = user.id or str(uuid.uuid4())
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _users.insert().values(
                        id=user_id,
                        email=user.email.lower(),
                        full_name=user.full_name,
                        password_hash=user.password_hash,
                        google_id=user.google_id,
                        github_id=user.github_id,
                        avatar_url=user.avatar_url,
                        role=user.role,
                        status=user.status,
                        email_verified=user.email_verified,
                        created_at=now,
                        updated_at=now,
                        last_login_at=user.last_login_at,
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise ConflictError("An account with these credentials already exists.") from exc
        created = self.get_by_id(user_id)
        if created is None:
            raise RuntimeError(f"User {user_id} missing after insert.")
        return created

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a live (non-deleted) user by primary key."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup among live users."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (func.lower(_users.c.email) == email.strip().lower()) & _users.c.deleted_at.is_(None)
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_provider(self, provider: Provider, provider_user_id: str) -> User | None:
        """Look up a live user by the provider's stable account id."""
        column = _provider_column(provider)
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((column == provider_user_id) & _users.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: str, **fields) -> bool:
        """Update columns on a live user. Returns False if the user was not found.

        Accepted fields: full_name, avatar_url, password_hash, role, status,
        email_verified, last_login_at. Provider ids go through set_provider_id().
        """
        fields["updated_at"] = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
                .values(**fields)
            )
            conn.commit()
        return result.rowcount > 0

    def set_provider_id(self, user_id: str, provider: Provider, provider_user_id: str | None) -> bool:
        """Link (or, with None, unlink) a provider account on a user.

        Raises ConflictError if the provider account is already linked to a
        different user.
        """
        now = _now_iso()
        if provider is Provider.GOOGLE:
            values = {"google_id": provider_user_id, "updated_at": now}
        else:
            values = {"github_id": provider_user_id, "updated_at": now}
        try:
            with self.engine.connect() as conn:
                result = conn.execute(
                    _users.update().where((_users.c.id == user_id) & _users.c.deleted_at.is_(None)).values(**values)
                )
                conn.commit()
        except IntegrityError as exc:
            raise ConflictError(f"This {provider.value} account is already linked to another user.") from exc
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        """Stamp the current UTC timestamp as last_login_at."""
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=now))
            conn.commit()

    def soft_delete_user(self, user_id: str) -> bool:
        """Mark a user deleted and cascade-delete its passkeys and reset tokens.

        Provider ids are cleared so the same external account can sign up
        again later; the email stays on the row for audit but no longer
        participates in the live-email unique index.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(_passkeys.delete().where(_passkeys.c.user_id == user_id))
            conn.execute(_reset_tokens.delete().where(_reset_tokens.c.user_id == user_id))
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
                .values(
                    status=UserStatus.DELETED.value,
                    deleted_at=now,
                    updated_at=now,
                    google_id=None,
                    github_id=None,
                    password_hash=None,
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Passkeys
    # ------------------------------------------------------------------

    def create_passkey(self, credential: PasskeyCredential) -> PasskeyCredential:
        """Insert a passkey. Raises ConflictError if credential_id already exists."""
        now = _now_iso()
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _passkeys.insert().values(
                        credential_id=credential.credential_id,
                        user_id=credential.user_id,
                        webauthn_user_id=credential.webauthn_user_id,
                        public_key=credential.public_key,
                        counter=credential.counter,
                        transports=json.dumps(credential.transports),
                        backed_up=credential.backed_up,
                        device_name=credential.device_name,
                        created_at=now,
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise ConflictError("This authenticator is already registered.") from exc
        created = self.get_passkey(credential.credential_id)
        if created is None:
            raise RuntimeError("Passkey missing after insert.")
        return created

    def get_passkey(self, credential_id: str) -> PasskeyCredential | None:
        with self.engine.connect() as conn:
            row = conn.execute(_passkeys.select().where(_passkeys.c.credential_id == credential_id)).fetchone()
        return _row_to_passkey(row) if row is not None else None

    def list_passkeys(self, user_id: str) -> list[PasskeyCredential]:
        """Return the user's passkeys, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _passkeys.select().where(_passkeys.c.user_id == user_id).order_by(_passkeys.c.created_at)
            ).fetchall()
        return [_row_to_passkey(r) for r in rows]

    def count_passkeys(self, user_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_passkeys).where(_passkeys.c.user_id == user_id)
            ).scalar()
        return result or 0

    def advance_passkey_counter(self, credential_id: str, new_counter: int) -> bool:
        """Compare-and-set the signature counter and stamp last_used_at.

        The WHERE clause re-checks monotonicity inside the UPDATE, so two
        concurrent assertions carrying the same counter cannot both succeed.
        Returns False if the stored counter already reached new_counter.
        """
        monotonic = _passkeys.c.counter < new_counter
        if new_counter == 0:
            monotonic = or_(monotonic, _passkeys.c.counter == 0)
        with self.engine.connect() as conn:
            result = conn.execute(
                _passkeys.update()
                .where((_passkeys.c.credential_id == credential_id) & monotonic)
                .values(counter=new_counter, last_used_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def rename_passkey(self, user_id: str, credential_id: str, device_name: str) -> bool:
        """Rename a passkey. Ownership is part of the WHERE clause [IDOR guard]."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _passkeys.update()
                .where((_passkeys.c.credential_id == credential_id) & (_passkeys.c.user_id == user_id))
                .values(device_name=device_name)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_passkey(self, user_id: str, credential_id: str) -> bool:
        """Delete a passkey. Callers must check the last-auth-method invariant first."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _passkeys.delete().where(
                    (_passkeys.c.credential_id == credential_id) & (_passkeys.c.user_id == user_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, user_id: str, token_hash: str, expires_at: str) -> int:
        """Insert a reset token, retiring any earlier unused token for the user.

        Only the most recently requested token is ever redeemable.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.user_id == user_id) & _reset_tokens.c.used_at.is_(None))
                .values(used_at=now)
            )
            result = conn.execute(
                _reset_tokens.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=expires_at,
                    created_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_valid_reset_token(self, token_hash: str) -> PasswordResetToken | None:
        """Return the unused, unexpired token with this hash, if any."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _reset_tokens.select()
                .where(
                    (_reset_tokens.c.token_hash == token_hash)
                    & _reset_tokens.c.used_at.is_(None)
                    & (_reset_tokens.c.expires_at > _now_iso())
                )
                .order_by(_reset_tokens.c.created_at.desc())
                .limit(1)
            ).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def mark_reset_token_used(self, token_id: int) -> bool:
        """Consume a reset token. Returns False if it was already used (lost race)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.id == token_id) & _reset_tokens.c.used_at.is_(None))
                .values(used_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Health / lifecycle
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        full_name=row.full_name,
        password_hash=row.password_hash,
        google_id=row.google_id,
        github_id=row.github_id,
        avatar_url=row.avatar_url,
        role=row.role,
        status=row.status,
        email_verified=bool(row.email_verified),
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login_at=row.last_login_at,
        deleted_at=row.deleted_at,
    )


def _row_to_passkey(row) -> PasskeyCredential:
    return PasskeyCredential(
        credential_id=row.credential_id,
        user_id=row.user_id,
        webauthn_user_id=row.webauthn_user_id,
        public_key=row.public_key,
        counter=int(row.counter),
        transports=json.loads(row.transports or "[]"),
        backed_up=bool(row.backed_up),
        device_name=row.device_name,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        used_at=row.used_at,
        created_at=row.created_at,
    )
