"""
Staff directory and session handling.

Credential storage
------------------
Passwords are hashed with ``hashlib.pbkdf2_hmac`` (SHA-256, configurable
iterations, 16-byte random salt) and stored as
``"<iterations>$<hex_salt>$<hex_hash>"``.  Verification uses
``hmac.compare_digest``.

Password reset
--------------
A reset needs a one-time token issued by an administrator and handed to
the user out of band.  Only the SHA-256 of the token is stored; tokens
expire and are single use.  Knowing a username alone is never enough.

Sessions
--------
``Session`` remembers the logged-in user for one client and turns it into
the explicit ``AuthContext`` the lifecycle engine takes on every call.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from pharmdesk.audit import AuditLedger
from pharmdesk.config import SecuritySettings
from pharmdesk.errors import AuthorizationError, RecordNotFoundError, ValidationError
from pharmdesk.models import AuthContext, StaffUser, UserRole, UserStatus
from pharmdesk.rbac import require_permission
from pharmdesk.store import SQLiteRecordStore

logger = logging.getLogger(__name__)

_HASH_ALG = "sha256"


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(password: str, iterations: int = 260_000, salt: bytes | None = None) -> str:
    """Hash ``password`` with PBKDF2-HMAC-SHA256 and return the storage blob."""
    if salt is None:
        salt = os.urandom(16)
    dk = hashlib.pbkdf2_hmac(_HASH_ALG, password.encode("utf-8"), salt, iterations)
    return f"{iterations}${salt.hex()}${dk.hex()}"


def verify_password(password: str, blob: str) -> bool:
    """Verify ``password`` against a stored hash blob."""
    try:
        iterations, hex_salt, hex_hash = blob.split("$", 2)
        salt = bytes.fromhex(hex_salt)
        rounds = int(iterations)
    except ValueError:
        return False
    dk = hashlib.pbkdf2_hmac(_HASH_ALG, password.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(dk.hex(), hex_hash)


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _normalize_username(username: str) -> str:
    return username.strip().lower()


# ---------------------------------------------------------------------------
# Staff directory
# ---------------------------------------------------------------------------

class StaffDirectory:
    """Staff accounts: provisioning, authentication and credential rotation."""

    USERS = "staff_users"
    TOKENS = "reset_tokens"

    def __init__(
        self,
        store: SQLiteRecordStore,
        audit: AuditLedger,
        security: SecuritySettings | None = None,
    ) -> None:
        self._store = store
        self._audit = audit
        self._security = security or SecuritySettings()

    # -- helpers --

    def _row_to_user(self, row: dict) -> StaffUser:
        return StaffUser(**{k: v for k, v in row.items() if k != "password_hash"})

    def _row_by_username(self, username: str) -> Optional[dict]:
        rows = self._store.select_where(self.USERS, username=_normalize_username(username))
        return rows[0] if rows else None

    def _check_password_policy(self, password: str) -> None:
        if len(password) < self._security.password_min_length:
            raise ValidationError(
                f"Password must be at least {self._security.password_min_length} characters.",
                code="WEAK_PASSWORD",
            )

    # -- provisioning --

    def provision_user(
        self,
        ctx: AuthContext,
        name: str,
        username: str,
        password: str,
        role: UserRole | str,
    ) -> StaffUser:
        """Create a staff account.  Administrators only.

        Raises:
            AuthorizationError: If the actor is not an administrator.
            ValidationError: On a duplicate username, an unknown or GUEST
                role, or a password below the minimum length.
        """
        require_permission(ctx, "provision_staff")
        try:
            role = UserRole(role)
        except ValueError:
            raise ValidationError(f"Unknown role '{role}'.", detail={"role": str(role)})
        if role == UserRole.GUEST:
            raise ValidationError("GUEST is not a provisionable role.")
        if not name.strip() or not username.strip():
            raise ValidationError("Name and username are required.")
        self._check_password_policy(password)

        with self._store.lock:
            if self._row_by_username(username) is not None:
                raise ValidationError(
                    f"Username '{username}' is already registered.",
                    code="DUPLICATE_USERNAME",
                    detail={"username": username},
                )
            user = StaffUser(
                username=_normalize_username(username),
                name=name.strip(),
                role=role,
            )
            record = user.model_dump(mode="json")
            record["password_hash"] = hash_password(password, self._security.pbkdf2_iterations)
            self._store.insert(self.USERS, record)

        logger.info("Provisioned staff user id=%s role=%s", user.id, role.value)
        self._audit.record(f"Provisioned staff: {user.username} ({role.value})", ctx.audit_name)
        return user

    def bootstrap_admin(self, name: str, username: str, password: str) -> Optional[StaffUser]:
        """Create the first administrator if the directory is empty.

        Returns the new user, or None if any account already exists.
        """
        with self._store.lock:
            if self._store.count(self.USERS) > 0:
                return None
            system = AuthContext(display_name="System", role=UserRole.SUPER_ADMIN)
            return self.provision_user(system, name, username, password, UserRole.SUPER_ADMIN)

    # -- queries --

    def list_users(self, ctx: AuthContext) -> list[StaffUser]:
        """Return every staff account, newest first.  Staff only."""
        require_permission(ctx, "view_staff")
        rows = self._store.select_all(self.USERS)
        return [self._row_to_user(r) for r in rows]

    def get_user(self, user_id: str) -> StaffUser:
        """Look up a staff account by id.

        Raises:
            RecordNotFoundError: If no account has that id.
        """
        row = self._store.select_one(self.USERS, user_id)
        if row is None:
            raise RecordNotFoundError(f"Staff user '{user_id}' not found.")
        return self._row_to_user(row)

    # -- account management --

    def _guard_admin_removal(self, ctx: AuthContext, user: StaffUser, verb: str) -> None:
        if ctx.user_id == user.id:
            raise ValidationError(f"Administrators cannot {verb} their own account.")
        if user.role == UserRole.SUPER_ADMIN and user.status == UserStatus.ACTIVE:
            admins = self._store.select_where(
                self.USERS,
                role=UserRole.SUPER_ADMIN.value,
                status=UserStatus.ACTIVE.value,
            )
            if len(admins) <= 1:
                raise ValidationError(
                    f"Cannot {verb} the last active administrator.",
                    code="LAST_ADMINISTRATOR",
                )

    def deactivate_user(self, ctx: AuthContext, user_id: str) -> StaffUser:
        """Mark an account INACTIVE; inactive accounts cannot log in.

        Open sessions for the account drop to guest on their next call.

        Raises:
            AuthorizationError: If the actor is not an administrator.
            RecordNotFoundError: If no account has that id.
            ValidationError: If the actor targets their own account or the
                last active administrator.
        """
        require_permission(ctx, "manage_staff")
        user = self.get_user(user_id)
        self._guard_admin_removal(ctx, user, "deactivate")
        self._store.update(self.USERS, user_id, {"status": UserStatus.INACTIVE.value})
        logger.info("Deactivated staff user id=%s", user_id)
        self._audit.record(f"Deactivated staff account: {user.username}", ctx.audit_name)
        return user.model_copy(update={"status": UserStatus.INACTIVE})

    def delete_user(self, ctx: AuthContext, user_id: str) -> None:
        """Remove a staff account.  Same guards as ``deactivate_user``."""
        require_permission(ctx, "manage_staff")
        user = self.get_user(user_id)
        self._guard_admin_removal(ctx, user, "delete")
        self._store.delete(self.USERS, user_id)
        logger.info("Deleted staff user id=%s", user_id)
        self._audit.record(f"Deleted staff account: {user.username}", ctx.audit_name)

    # -- authentication --

    def authenticate(self, username: str, password: str) -> Optional[StaffUser]:
        """Return the matching active user, or None.  Writes no audit entry."""
        row = self._row_by_username(username)
        if row is None or not verify_password(password, row["password_hash"]):
            return None
        if row["status"] != UserStatus.ACTIVE.value:
            logger.warning("Login refused for inactive account id=%s", row["id"])
            return None
        return self._row_to_user(row)

    # -- credential rotation --

    def change_password(self, ctx: AuthContext, current_password: str, new_password: str) -> None:
        """Rotate the acting user's own password."""
        if not ctx.is_authenticated or ctx.username is None:
            raise AuthorizationError("Log in to change your password.")
        row = self._row_by_username(ctx.username)
        if row is None or not verify_password(current_password, row["password_hash"]):
            raise AuthorizationError("Current password is incorrect.")
        self._check_password_policy(new_password)
        self._store.update(
            self.USERS,
            row["id"],
            {"password_hash": hash_password(new_password, self._security.pbkdf2_iterations)},
        )
        self._audit.record(f"Password updated for user: {row['username']}", ctx.audit_name)

    def issue_reset_token(self, ctx: AuthContext, username: str) -> str:
        """Issue a one-time reset token for ``username``.  Administrators only.

        The plaintext token is returned once, for out-of-band delivery.
        """
        require_permission(ctx, "issue_reset_token")
        row = self._row_by_username(username)
        if row is None:
            raise RecordNotFoundError(f"Staff user '{username}' not found.")
        token = secrets.token_urlsafe(32)
        now = datetime.now(timezone.utc)
        self._store.insert(self.TOKENS, {
            "id": str(uuid.uuid4()),
            "username": row["username"],
            "token_hash": _token_digest(token),
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=self._security.reset_token_ttl_seconds)).isoformat(),
            "used_at": None,
        })
        self._audit.record(f"Password reset token issued for user: {row['username']}", ctx.audit_name)
        return token

    def reset_password(self, username: str, token: str, new_password: str) -> None:
        """Set a new password using an admin-issued reset token.

        Raises:
            AuthorizationError: If the token is unknown, already used,
                expired, or issued for a different user.
        """
        normalized = _normalize_username(username)
        rows = self._store.select_where(self.TOKENS, token_hash=_token_digest(token))
        now = datetime.now(timezone.utc)
        if (
            not rows
            or rows[0]["username"] != normalized
            or rows[0]["used_at"] is not None
            or datetime.fromisoformat(rows[0]["expires_at"]) <= now
        ):
            logger.warning("Rejected password reset attempt")
            raise AuthorizationError("Reset token is invalid or has expired.")
        self._check_password_policy(new_password)
        user_row = self._row_by_username(normalized)
        if user_row is None:
            raise AuthorizationError("Reset token is invalid or has expired.")

        # Token is consumed before the credential changes.
        if not self._store.update(self.TOKENS, rows[0]["id"], {"used_at": now.isoformat()},
                                  expected={"used_at": None}):
            raise AuthorizationError("Reset token is invalid or has expired.")
        self._store.update(
            self.USERS,
            user_row["id"],
            {"password_hash": hash_password(new_password, self._security.pbkdf2_iterations)},
        )
        self._audit.record(f"Password reset for user: {normalized}", "System")


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class Session:
    """The logged-in staff user for a single client."""

    def __init__(self, directory: StaffDirectory, audit: AuditLedger) -> None:
        self._directory = directory
        self._audit = audit
        self._current: Optional[StaffUser] = None

    def current_user(self) -> Optional[StaffUser]:
        """Return the logged-in user, re-read from the directory.

        A session whose account has since been deleted or deactivated is
        ended here and yields None.
        """
        if self._current is None:
            return None
        try:
            user = self._directory.get_user(self._current.id)
        except RecordNotFoundError:
            user = None
        if user is None or user.status != UserStatus.ACTIVE:
            logger.warning("Ending session for removed or inactive account id=%s", self._current.id)
            self._current = None
            return None
        self._current = user
        return user

    def context(self) -> AuthContext:
        """Return the acting identity for lifecycle calls (guest when logged out)."""
        user = self.current_user()
        if user is None:
            return AuthContext.guest()
        return AuthContext.for_user(user)

    def login(self, username: str, password: str) -> Optional[StaffUser]:
        """Authenticate and start a session.  Only successes are audited.

        Any previous login on this session ends first, so a failed attempt
        leaves the session logged out.
        """
        self._current = None
        user = self._directory.authenticate(username, password)
        if user is None:
            return None
        self._current = user
        logger.info("Staff user id=%s logged in", user.id)
        self._audit.record(f"Login: {user.username}", user.name)
        return user

    def logout(self) -> None:
        self._current = None
