from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional, Protocol, Set

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authgate.config import Settings
from authgate.logging import get_logger, mask_email
from authgate.service.delivery import CodeDelivery, DeliveryError
from authgate.service.errors import (
    AccountInactiveError,
    AccountLockedOutError,
    AttemptsExhaustedError,
    DeliveryFailedError,
    EmailAlreadyExistsError,
    InvalidCredentialsError,
    InvalidOrExpiredCodeError,
    InvalidTokenError,
    InvalidUserStatusError,
    StoreUnavailableError,
    TenantAccessDeniedError,
    ValidationError,
)
from authgate.service.lockout import LockoutTracker
from authgate.service.otc import (
    CodeCheck,
    CodeDispatch,
    CodeDispatcher,
    clean_code,
    is_valid_phone,
    normalize_phone,
)
from authgate.service.tokens import TokenClaims, TokenKind, TokenPair, TokenService
from authgate.storage.common import CounterStore, normalize_email, password_reset_key
from authgate.storage.errors import ConstraintViolation, StoreUnavailable
from authgate.storage.models import (
    BASELINE_ROLE,
    BYPASS_ROLE,
    AccountStatus,
    Credential,
    Role,
)

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9+_.-]+@(.+)$")
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 255

RESET_MESSAGE_TEMPLATE = (
    "{app_name} - Use this token to reset your password: {token}. "
    "Valid for {minutes} minutes."
)


class IdentityStore(Protocol):
    def find_by_email(self, email: str) -> Optional[Credential]: ...

    def find_by_id(self, user_id: str) -> Optional[Credential]: ...

    def exists_by_email(self, email: str) -> bool: ...

    def save(self, credential: Credential) -> Credential: ...


class MembershipResolver(Protocol):
    def roles_for_user(self, user_id: str) -> Set[Role]: ...

    def default_tenant_for_user(self, user_id: str) -> Optional[str]: ...

    def has_access(self, user_id: str, tenant_id: str) -> bool: ...


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    CREDENTIALS_OK = "credentials_ok"
    CODE_PENDING = "code_pending"
    AUTHENTICATED = "authenticated"
    DIRECT_AUTHENTICATED = "direct_authenticated"


@dataclass
class LoginResult:
    state: AuthState
    tokens: Optional[TokenPair] = None
    temp_token: Optional[str] = None
    expires_in: Optional[int] = None
    destination: Optional[str] = None


@dataclass
class RegistrationResult:
    user_id: str
    temp_token: str
    expires_in: int
    destination: str


@dataclass
class AuthContext:
    user_id: str
    roles: List[str] = field(default_factory=list)
    active_tenant_id: Optional[str] = None

    def has_role(self, role: Role | str) -> bool:
        return getattr(role, "value", role) in self.roles


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email and EMAIL_PATTERN.match(email.strip()))


def _check_password_shape(password: Optional[str]) -> str:
    if not password or not (MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH):
        raise ValidationError(
            f"password must be between {MIN_PASSWORD_LENGTH} and {MAX_PASSWORD_LENGTH} characters"
        )
    return password


class AuthService:
    """Session orchestrator: password check, one-time code, token issuance.

    Flow per login: UNAUTHENTICATED -> CREDENTIALS_OK -> CODE_PENDING ->
    AUTHENTICATED, or straight to DIRECT_AUTHENTICATED for privileged
    accounts and accounts without a phone on file. Every failure is a
    ``ServiceError`` subclass; nothing is retried here.
    """

    def __init__(
        self,
        settings: Settings,
        identities: IdentityStore,
        memberships: MembershipResolver,
        *,
        store: CounterStore,
        tokens: TokenService,
        lockout: LockoutTracker,
        codes: CodeDispatcher,
        reset_delivery: CodeDelivery,
    ) -> None:
        self.settings = settings
        self.identities = identities
        self.memberships = memberships
        self.store = store
        self.tokens = tokens
        self.lockout = lockout
        self.codes = codes
        self.reset_delivery = reset_delivery
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, credential: Credential, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(credential.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable", user_id=credential.id)
            return False

    # ------------------------------------------------------------------
    # Role and tenant resolution
    # ------------------------------------------------------------------

    def resolve_roles(self, user_id: str) -> Set[Role]:
        roles = set(self.memberships.roles_for_user(user_id))
        return roles or {BASELINE_ROLE}

    def resolve_active_tenant(
        self, user_id: str, requested: Optional[str] = None
    ) -> Optional[str]:
        if requested:
            if not self.memberships.has_access(user_id, requested):
                self.logger.warning(
                    "tenant_access_denied", user_id=user_id, tenant_id=requested
                )
                raise TenantAccessDeniedError(detail={"tenant_id": requested})
            return requested
        default = self.memberships.default_tenant_for_user(user_id)
        if default and self.memberships.has_access(user_id, default):
            return default
        return None

    def _is_privileged(self, credential: Credential, roles: Iterable[Role]) -> bool:
        return credential.status == AccountStatus.SUPERUSER or BYPASS_ROLE in roles

    async def _issue_session(
        self, credential: Credential, active_tenant_id: Optional[str] = None
    ) -> TokenPair:
        roles = self.resolve_roles(credential.id)
        tenant_id = self.resolve_active_tenant(credential.id, active_tenant_id)
        return await self.tokens.issue_pair(credential.id, roles, tenant_id)

    def _load_subject(self, claims: TokenClaims) -> Credential:
        credential = self.identities.find_by_id(claims.subject)
        if credential is None:
            # A token for a user that no longer exists is just an invalid token
            self.logger.warning("token_subject_missing", user_id=claims.subject)
            raise InvalidTokenError()
        return credential

    async def _check_code(self, credential: Credential, code: str) -> None:
        if not credential.has_phone:
            raise InvalidOrExpiredCodeError()
        outcome = await self.codes.verifier.check(normalize_phone(credential.phone), code)
        if outcome is CodeCheck.ATTEMPTS_EXHAUSTED:
            raise AttemptsExhaustedError()
        if outcome is not CodeCheck.VERIFIED:
            raise InvalidOrExpiredCodeError()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> LoginResult:
        if not email or not password:
            raise ValidationError("email and password are required")
        account = normalize_email(email)
        if await self.lockout.is_locked(account):
            retry_after = await self.lockout.remaining_seconds(account)
            self.logger.warning("login_locked_out", email=mask_email(account))
            raise AccountLockedOutError(detail={"retry_after": retry_after})

        credential = self.identities.find_by_email(account)
        if credential is None or not self.verify_password(credential, password):
            failures = await self.lockout.record_failure(account)
            self.logger.info(
                "login_failed",
                email=mask_email(account),
                reason="unknown_user" if credential is None else "password_mismatch",
                failures=failures,
            )
            raise InvalidCredentialsError()
        if credential.is_inactive:
            self.logger.info("login_rejected_inactive", user_id=credential.id)
            raise AccountInactiveError()

        roles = self.resolve_roles(credential.id)
        if self._is_privileged(credential, roles) or not credential.has_phone:
            await self.lockout.reset(account)
            pair = await self._issue_session(credential)
            self.logger.info("login_direct", user_id=credential.id)
            return LoginResult(state=AuthState.DIRECT_AUTHENTICATED, tokens=pair)

        # The failure counter survives until the code step succeeds as well
        dispatch = await self.codes.send(credential.phone)
        temp_token = await self.tokens.issue_temp(credential.id)
        self.logger.info(
            "login_code_pending", user_id=credential.id, destination=dispatch.destination
        )
        return LoginResult(
            state=AuthState.CODE_PENDING,
            temp_token=temp_token,
            expires_in=dispatch.expires_in,
            destination=dispatch.destination,
        )

    async def verify_code_and_complete_login(
        self, temp_token: str, code: str, active_tenant_id: Optional[str] = None
    ) -> LoginResult:
        code = clean_code(code)
        claims = await self.tokens.validate(temp_token, TokenKind.TEMP)
        credential = self._load_subject(claims)
        if credential.is_inactive:
            raise AccountInactiveError()
        await self._check_code(credential, code)
        if credential.status == AccountStatus.PENDING:
            # The verified code proves the phone, which is all activation asks for
            self._activate(credential)

        await self.tokens.revoke(temp_token, claims, cascade=False)
        await self.lockout.reset(credential.email)
        pair = await self._issue_session(credential, active_tenant_id)
        self.logger.info(
            "login_completed", user_id=credential.id, active_tenant_id=pair.active_tenant_id
        )
        return LoginResult(state=AuthState.AUTHENTICATED, tokens=pair)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        phone: str,
        *,
        name: Optional[str] = None,
    ) -> RegistrationResult:
        if not is_valid_email(email):
            raise ValidationError("invalid email format")
        if not is_valid_phone(phone):
            raise ValidationError("invalid phone number format")
        _check_password_shape(password)

        account = normalize_email(email)
        if self.identities.exists_by_email(account):
            raise EmailAlreadyExistsError(detail={"field": "email"})
        credential = Credential.new(
            account,
            self.hash_password(password),
            phone=normalize_phone(phone),
            name=name,
        )
        try:
            credential = self.identities.save(credential)
        except ConstraintViolation as exc:
            raise EmailAlreadyExistsError(detail={"field": "email"}) from exc
        self.logger.info("user_registered", user_id=credential.id, email=mask_email(account))

        dispatch = await self.codes.send(credential.phone)
        temp_token = await self.tokens.issue_temp(credential.id)
        return RegistrationResult(
            user_id=credential.id,
            temp_token=temp_token,
            expires_in=dispatch.expires_in,
            destination=dispatch.destination,
        )

    async def verify_code_and_activate(self, temp_token: str, code: str) -> LoginResult:
        code = clean_code(code)
        claims = await self.tokens.validate(temp_token, TokenKind.TEMP)
        credential = self._load_subject(claims)
        if credential.status != AccountStatus.PENDING:
            raise InvalidUserStatusError("account is already active")
        await self._check_code(credential, code)

        self._activate(credential)
        await self.tokens.revoke(temp_token, claims, cascade=False)

        roles = self.resolve_roles(credential.id)
        pair = await self.tokens.issue_pair(credential.id, roles, None)
        return LoginResult(state=AuthState.AUTHENTICATED, tokens=pair)

    def _activate(self, credential: Credential) -> None:
        credential.status = AccountStatus.ACTIVE
        credential.updated_at = datetime.now(timezone.utc)
        self.identities.save(credential)
        self.logger.info("user_activated", user_id=credential.id)

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    async def refresh(
        self, refresh_token: str, active_tenant_id: Optional[str] = None
    ) -> TokenPair:
        claims = await self.tokens.validate(refresh_token, TokenKind.REFRESH)
        credential = self._load_subject(claims)
        if credential.is_inactive:
            raise AccountInactiveError()
        # Minted before redeeming so a tenant or rate-limit rejection leaves
        # the presented token usable
        pair = await self._issue_session(credential, active_tenant_id)
        if not await self.tokens.redeem(refresh_token, claims):
            # Another request redeemed this token first; only its pair stays live
            await self.tokens.discard_pair(credential.id, pair)
            self.logger.warning("refresh_token_replayed", user_id=credential.id)
            raise InvalidTokenError()
        self.logger.info("tokens_refreshed", user_id=credential.id)
        return pair

    async def logout(self, access_token: str) -> None:
        claims = await self.tokens.validate(access_token, TokenKind.ACCESS)
        await self.tokens.revoke(access_token, claims)
        self.logger.info("logout", user_id=claims.subject)

    async def resend_code(self, temp_token: str) -> CodeDispatch:
        claims = await self.tokens.validate(temp_token, TokenKind.TEMP)
        credential = self._load_subject(claims)
        if not credential.has_phone:
            raise ValidationError("account has no phone number on file")
        return await self.codes.send(credential.phone)

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve an ``Authorization: Bearer`` header to the caller's context."""
        token = self._extract_bearer(authorization)
        if not token:
            raise InvalidTokenError()
        claims = await self.tokens.validate(token, TokenKind.ACCESS)
        return AuthContext(
            user_id=claims.subject,
            roles=list(claims.roles),
            active_tenant_id=claims.active_tenant_id,
        )

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    async def request_password_reset(self, email: str) -> None:
        if not is_valid_email(email):
            raise ValidationError("invalid email format")
        account = normalize_email(email)
        credential = self.identities.find_by_email(account)
        if credential is None or credential.is_inactive:
            # Same outcome as success so the endpoint cannot enumerate accounts
            self.logger.info("password_reset_unknown_account", email=mask_email(account))
            return

        token = secrets.token_urlsafe(32)
        ttl_minutes = self.settings.password_reset_ttl_minutes
        key = password_reset_key(token)
        try:
            await self.store.set(key, credential.id, ttl_minutes * 60)
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc

        message = RESET_MESSAGE_TEMPLATE.format(
            app_name=self.settings.app_name, token=token, minutes=ttl_minutes
        )
        try:
            delivery_id = await asyncio.wait_for(
                self.reset_delivery.send(credential.email, message),
                timeout=self.settings.delivery_timeout_seconds,
            )
        except (DeliveryError, asyncio.TimeoutError) as exc:
            self.logger.error(
                "password_reset_delivery_failed",
                user_id=credential.id,
                error_type=type(exc).__name__,
            )
            try:
                await self.store.delete(key)
            except StoreUnavailable as store_exc:
                raise StoreUnavailableError() from store_exc
            raise DeliveryFailedError() from exc
        self.logger.info(
            "password_reset_requested", user_id=credential.id, delivery_id=delivery_id
        )

    async def complete_password_reset(self, token: str, new_password: str) -> None:
        if not token:
            raise ValidationError("reset token is required")
        _check_password_shape(new_password)
        key = password_reset_key(token)
        try:
            user_id = await self.store.get(key)
            # Single use: only the caller that removes the key may proceed
            consumed = bool(user_id) and await self.store.delete(key) > 0
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc
        if not consumed:
            self.logger.warning("password_reset_invalid_token")
            raise InvalidTokenError()

        credential = self.identities.find_by_id(user_id)
        if credential is None:
            self.logger.warning("password_reset_user_missing", user_id=user_id)
            raise InvalidTokenError()
        credential.password_hash = self.hash_password(new_password)
        credential.updated_at = datetime.now(timezone.utc)
        self.identities.save(credential)

        await self.lockout.reset(credential.email)
        revoked = await self.tokens.revoke_all_for_user(credential.id)
        self.logger.info(
            "password_reset_completed",
            user_id=credential.id,
            families_revoked=revoked,
        )
