from __future__ import annotations

import asyncio
import secrets
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol, TypeVar

from pydantic import ValidationError as PydanticValidationError

from accountkit.config import Settings
from accountkit.logging import get_logger, hash_identifier
from accountkit.service.errors import (
    AlreadyExistsError,
    AlreadyRegisteredError,
    ForbiddenError,
    InternalError,
    InvalidCredentialsError,
    InvalidOtpError,
    InvalidRequestError,
    InvalidTokenError,
    NoPendingRegistrationError,
    NotFoundError,
    NotificationFailedError,
    PasswordMismatchError,
    ServiceError,
    ValidationError,
)
from accountkit.service.patching import apply_patch
from accountkit.service.tokens import TokenIssuer
from accountkit.service.validation import AccountFields, describe_errors, normalize_email
from accountkit.storage.errors import ConstraintViolation
from accountkit.storage.models import (
    Account,
    PendingRegistration,
    Session,
    TokenPair,
    utcnow,
)
from accountkit.storage.pending import (
    CONSUME_MISMATCH,
    CONSUME_MISSING,
    ConsumeResult,
)

T = TypeVar("T")


class AccountStore(Protocol):
    def create_account(self, account: Account) -> Account: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def find_account(
        self, *, username: Optional[str] = None, email: Optional[str] = None
    ) -> Optional[Account]: ...

    def replace_account(self, account: Account) -> Account: ...

    def delete_account(self, username: str) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def get_session_by_jti(self, jti: str) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(self, username: str) -> int: ...


class PendingStore(Protocol):
    async def put(self, pending: PendingRegistration) -> None: ...

    async def get(self, email: str) -> Optional[PendingRegistration]: ...

    async def consume(self, email: str, otp: str) -> ConsumeResult: ...


class Notifier(Protocol):
    def send_otp(self, to_email: str, code: str) -> bool: ...


class Hasher(Protocol):
    def hash(self, password: str) -> str: ...

    def verify(self, password: str, digest: str) -> bool: ...


class AccountService:
    """Registration, OTP confirmation, sessions and profile management.

    Stores are synchronous and thread-safe; argon2 and SMTP work is pushed to
    worker threads. Every failure leaves this class as a ``ServiceError``
    subclass, with collaborator faults folded into ``InternalError``.
    """

    def __init__(
        self,
        store: AccountStore,
        pending: PendingStore,
        hasher: Hasher,
        issuer: TokenIssuer,
        notifier: Notifier,
        settings: Settings,
    ) -> None:
        self.store = store
        self.pending = pending
        self.hasher = hasher
        self.issuer = issuer
        self.notifier = notifier
        self.settings = settings
        self.logger = get_logger(__name__)
        # Verified against for unknown usernames so both login paths cost the same
        self._dummy_digest: Optional[str] = None

    # -- collaborator guards ----------------------------------------------

    def _guard(self, action: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return fn(*args, **kwargs)
        except (ServiceError, ConstraintViolation):
            raise
        except Exception as exc:
            self.logger.error(
                "account_store_failed",
                action=action,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("account store unavailable") from exc

    async def _pending_call(self, action: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except Exception as exc:
            self.logger.error(
                "pending_store_failed",
                action=action,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise InternalError("registration store unavailable") from exc

    async def _hash_password(self, password: str) -> str:
        try:
            return await asyncio.to_thread(self.hasher.hash, password)
        except Exception as exc:
            self.logger.error("password_hash_failed", error_type=type(exc).__name__)
            raise InternalError("unable to process credentials") from exc

    async def _unknown_user_digest(self) -> str:
        if self._dummy_digest is None:
            self._dummy_digest = await self._hash_password(secrets.token_urlsafe(16))
        return self._dummy_digest

    async def _verify_password(self, password: str, digest: str) -> bool:
        if not digest:
            return False
        try:
            return await asyncio.to_thread(self.hasher.verify, password, digest)
        except Exception as exc:
            self.logger.error("password_verify_failed", error_type=type(exc).__name__)
            raise InternalError("unable to process credentials") from exc

    async def _deliver_otp(self, email: str, code: str) -> bool:
        try:
            return bool(await asyncio.to_thread(self.notifier.send_otp, email, code))
        except Exception as exc:
            self.logger.error(
                "otp_delivery_raised",
                email_hash=hash_identifier(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    def _generate_otp(self) -> str:
        length = self.settings.otp_length
        return f"{secrets.randbelow(10 ** length):0{length}d}"

    # -- registration -----------------------------------------------------

    async def register(
        self,
        *,
        name: str,
        username: str,
        password: str,
        confirm_password: str,
        date_of_birth: date | str | None,
        email: str,
    ) -> None:
        """Start a registration and send the one-time code to ``email``.

        Nothing is stored and nothing is sent unless every check passes. A
        previous unverified registration for the same email is replaced.
        """
        if not all([name, username, password, confirm_password, date_of_birth, email]):
            raise InvalidRequestError("all registration fields are required")
        if password != confirm_password:
            raise PasswordMismatchError("password and confirmation do not match")
        try:
            fields = AccountFields(
                name=name, username=username, email=email, date_of_birth=date_of_birth
            )
        except PydanticValidationError as exc:
            raise ValidationError(
                "registration details are invalid",
                detail={"errors": describe_errors(exc)},
            ) from exc

        existing = self._guard(
            "find_account",
            self.store.find_account,
            username=fields.username,
            email=fields.email,
        )
        if existing is not None:
            raise AlreadyExistsError("username or email is already registered")

        password_hash = await self._hash_password(password)
        otp = self._generate_otp()
        now = utcnow()
        pending = PendingRegistration(
            name=fields.name,
            username=fields.username,
            email=fields.email,
            password_hash=password_hash,
            otp=otp,
            date_of_birth=fields.date_of_birth,
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.otp_ttl_minutes),
        )
        await self._pending_call("put", self.pending.put(pending))

        if not await self._deliver_otp(fields.email, otp):
            # Drop only our own entry; a newer registration may have replaced it
            await self._pending_call("rollback", self.pending.consume(fields.email, otp))
            self.logger.warning(
                "registration_notification_failed",
                email_hash=hash_identifier(fields.email),
            )
            raise NotificationFailedError("could not deliver the verification code")

        self.logger.info(
            "registration_pending",
            email_hash=hash_identifier(fields.email),
            expires_at=pending.expires_at.isoformat(),
        )

    async def verify_otp(self, email: str, otp: str) -> Account:
        """Confirm a pending registration and create its account.

        The pending entry is consumed atomically, and the remaining work is
        shielded so a caller that stops waiting cannot strand a consumed
        entry without an account.
        """
        if not email or not otp:
            raise InvalidRequestError("email and code are required")
        return await asyncio.shield(self._verify_otp(normalize_email(email), otp.strip()))

    async def _verify_otp(self, email: str, otp: str) -> Account:
        status, pending = await self._pending_call(
            "consume", self.pending.consume(email, otp)
        )
        if status == CONSUME_MISSING or pending is None:
            raise NoPendingRegistrationError("no pending registration for this email")
        if status == CONSUME_MISMATCH:
            self.logger.info("otp_verification_failed", email_hash=hash_identifier(email))
            raise InvalidOtpError("verification code is incorrect")

        existing = self._guard("find_account", self.store.find_account, email=email)
        if existing is not None:
            raise AlreadyRegisteredError("an account already exists for this email")

        account = Account.new(
            name=pending.name,
            username=pending.username,
            email=pending.email,
            password_hash=pending.password_hash,
            date_of_birth=pending.date_of_birth,
            email_verified=True,
        )
        try:
            self._guard("create_account", self.store.create_account, account)
        except ConstraintViolation as exc:
            self.logger.info(
                "account_create_conflict",
                field=exc.field,
                email_hash=hash_identifier(email),
            )
            raise AlreadyRegisteredError("an account already exists for these details") from exc
        except InternalError:
            # Put the entry back so the user can retry the same code, unless a
            # newer registration for this email has taken the slot meanwhile
            try:
                if await self.pending.get(email) is None:
                    await self.pending.put(pending)
            except Exception as restore_exc:
                self.logger.error("pending_restore_failed", error=str(restore_exc))
            raise
        self.logger.info("account_registered", account_id=account.id)
        return account

    # -- sessions ---------------------------------------------------------

    def _start_session(self, account: Account) -> TokenPair:
        access_token, jti = self._guard(
            "issue_access_token", self.issuer.issue_access_token, account
        )
        refresh_token = self._guard("issue_refresh_token", self.issuer.issue_refresh_token)
        session = Session.new(
            account.username,
            refresh_token,
            jti,
            ttl_days=self.settings.refresh_token_ttl_days,
        )
        try:
            self._guard("create_session", self.store.create_session, session)
        except ConstraintViolation as exc:
            raise InternalError("could not start a session") from exc
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            jti=jti,
            refresh_expires_at=session.expires_at,
        )

    async def login(self, username: str, password: str) -> TokenPair:
        if not username or not password:
            raise InvalidRequestError("username and password are required")
        account = self._guard(
            "get_account", self.store.get_account_by_username, username
        )
        if account is None:
            await self._verify_password(password, await self._unknown_user_digest())
            self.logger.info("login_failed")
            raise InvalidCredentialsError("invalid username or password")
        if not await self._verify_password(password, account.password_hash):
            self.logger.info("login_failed")
            raise InvalidCredentialsError("invalid username or password")
        tokens = self._start_session(account)
        self.logger.info("login_succeeded", account_id=account.id, jti=tokens.jti)
        return tokens

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token: the old session is removed, a new one issued."""
        if not refresh_token:
            raise InvalidRequestError("refresh token is required")
        session = self._guard(
            "get_session", self.store.get_session_by_refresh_token, refresh_token
        )
        if session is None:
            raise InvalidTokenError("invalid or expired token")
        if session.is_expired():
            self._guard("delete_session", self.store.delete_session, session.id)
            self.logger.info("refresh_token_expired", session_id=session.id)
            raise InvalidTokenError("invalid or expired token")
        # Only the caller that actually removes the row may rotate it
        if not self._guard("delete_session", self.store.delete_session, session.id):
            raise InvalidTokenError("invalid or expired token")
        account = self._guard(
            "get_account", self.store.get_account_by_username, session.username
        )
        if account is None:
            raise InvalidTokenError("invalid or expired token")
        tokens = self._start_session(account)
        self.logger.info("session_rotated", account_id=account.id, jti=tokens.jti)
        return tokens

    async def logout(self, access_token: Optional[str]) -> int:
        """Revoke every session of the token's user; returns how many went."""
        if not access_token:
            raise InvalidRequestError("access token is required")
        claims = self.issuer.validate(access_token)
        if claims is None:
            raise InvalidTokenError("invalid or expired token")
        username = claims.get("username")
        if not isinstance(username, str) or not username:
            raise InvalidTokenError("invalid or expired token")
        account = self._guard(
            "get_account", self.store.get_account_by_username, username
        )
        if account is None:
            raise NotFoundError("account not found")
        removed = self._guard(
            "delete_user_sessions", self.store.delete_user_sessions, username
        )
        self.logger.info("logout", account_id=account.id, sessions_revoked=removed)
        return removed

    # -- profile ----------------------------------------------------------

    def _authorize(self, access_token: Optional[str], target_username: str) -> dict:
        """Resolve a live access token and require it to own ``target_username``."""
        if not access_token:
            raise InvalidRequestError("access token is required")
        claims = self.issuer.validate(access_token)
        if claims is None:
            raise InvalidTokenError("invalid or expired token")
        username = claims.get("username")
        jti = claims.get("jti")
        if not isinstance(username, str) or not username or not isinstance(jti, str):
            raise InvalidTokenError("invalid or expired token")
        # Access tokens die with the session that issued them
        session = self._guard("get_session", self.store.get_session_by_jti, jti)
        if session is None or session.username != username or session.is_expired():
            raise InvalidTokenError("invalid or expired token")
        if username != target_username:
            raise ForbiddenError("token does not grant access to this account")
        return claims

    async def get_user(self, access_token: Optional[str], target_username: str) -> Account:
        self._authorize(access_token, target_username)
        account = self._guard(
            "get_account", self.store.get_account_by_username, target_username
        )
        if account is None:
            raise NotFoundError("account not found")
        return account

    async def delete_user(self, access_token: Optional[str], target_username: str) -> None:
        self._authorize(access_token, target_username)
        deleted = self._guard("delete_account", self.store.delete_account, target_username)
        if not deleted:
            raise NotFoundError("account not found")
        self.logger.info("account_removed")

    async def update_user(
        self,
        access_token: Optional[str],
        target_username: str,
        operations: Iterable[Any],
    ) -> Account:
        """Apply a JSON-patch document to the caller's own account.

        Credential fields cannot be patched; the stored password hash is
        always carried over unchanged.
        """
        self._authorize(access_token, target_username)
        account = self._guard(
            "get_account", self.store.get_account_by_username, target_username
        )
        if account is None:
            raise NotFoundError("account not found")
        updated = apply_patch(account, operations)
        try:
            saved = self._guard("replace_account", self.store.replace_account, updated)
        except ConstraintViolation as exc:
            if exc.field in {"username", "email"}:
                raise AlreadyExistsError(
                    f"{exc.field} is already in use", detail={"field": exc.field}
                ) from exc
            raise NotFoundError("account not found") from exc
        changed: List[str] = [
            name
            for name in ("name", "username", "email", "date_of_birth")
            if getattr(account, name) != getattr(saved, name)
        ]
        self.logger.info("account_updated", account_id=saved.id, fields=changed)
        return saved
