"""
Authentication: password hashing, bearer/reset tokens and the
forgot -> verify OTP -> reset password flow.
"""
import hashlib
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import bcrypt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from config import Settings
from database import Store
from errors import AuthError, NotFoundError, ResetError, ValidationError
from models import PublicUser, User
from notifier import Notifier

logger = logging.getLogger(__name__)

JWT_ALG = "HS256"
RESET_PURPOSE = "password_reset"
FORGOT_PASSWORD_MESSAGE = "If the email exists, an OTP has been sent"


class TokenUser(BaseModel):
    """Identity decoded from a bearer token."""
    user_id: int
    email: str


def _pw_prehash(pw: str) -> bytes:
    """Pre-hash to avoid bcrypt's 72-byte input limit."""
    return hashlib.sha256(pw.encode("utf-8")).digest()


def hash_password(pw: str, rounds: int = 10) -> str:
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(_pw_prehash(pw), salt).decode("utf-8")


def verify_password(pw: str, pw_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_pw_prehash(pw), pw_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def generate_otp(rng: Optional[random.Random] = None) -> str:
    """6-digit numeric code, never starting with 0."""
    rng = rng or random
    return str(rng.randint(100000, 999999))


class AuthService:
    def __init__(
        self,
        store: Store,
        notifier: Notifier,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.settings = settings
        # clock drives OTP expiry; token expiry is checked by jose against real time
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.rng = rng
        # compared against when the email is unknown so both failures cost the same
        self._dummy_hash = hash_password("dummy-password", settings.bcrypt_rounds)

    # Tokens

    def sign_token(self, user: User) -> str:
        exp = datetime.now(timezone.utc) + timedelta(days=self.settings.token_ttl_days)
        return jwt.encode(
            {"userId": user.id, "email": user.email, "exp": exp},
            self.settings.jwt_secret,
            algorithm=JWT_ALG,
        )

    def sign_reset_token(self, email: str) -> str:
        exp = datetime.now(timezone.utc) + timedelta(minutes=self.settings.reset_token_ttl_minutes)
        return jwt.encode(
            {"email": email, "purpose": RESET_PURPOSE, "exp": exp},
            self.settings.jwt_secret,
            algorithm=JWT_ALG,
        )

    def _decode(self, token: str) -> dict:
        return jwt.decode(token, self.settings.jwt_secret, algorithms=[JWT_ALG])

    def authenticate(self, token: Optional[str]) -> TokenUser:
        if not token:
            raise AuthError("Missing token")
        try:
            claims = self._decode(token)
        except JWTError:
            raise AuthError("Invalid token")
        # reset tokens carry no userId and must not work as bearer tokens
        user_id = claims.get("userId")
        if not isinstance(user_id, int) or not claims.get("email"):
            raise AuthError("Invalid token")
        return TokenUser(user_id=user_id, email=claims["email"])

    # Account operations

    def register(self, email: Optional[str], password: Optional[str]) -> tuple[str, PublicUser]:
        if not email or not password:
            raise ValidationError("Email and password required")
        user = self.store.create_user(email, hash_password(password, self.settings.bcrypt_rounds))
        return self.sign_token(user), PublicUser(id=user.id, email=user.email)

    def login(self, email: Optional[str], password: Optional[str]) -> tuple[str, PublicUser]:
        if not email or not password:
            raise ValidationError("Email and password required")
        user = self.store.get_user_by_email(email)
        if user is None:
            verify_password(password, self._dummy_hash)
            raise AuthError("Invalid credentials")
        if not verify_password(password, user.password_hash):
            raise AuthError("Invalid credentials")
        logger.info("User %s logged in", user.id)
        return self.sign_token(user), PublicUser(id=user.id, email=user.email)

    def me(self, identity: TokenUser) -> PublicUser:
        user = self.store.get_user_by_id(identity.user_id)
        if user is None:
            raise NotFoundError("User not found")
        return PublicUser(id=user.id, email=user.email, created_at=user.created_at)

    # Password reset

    def forgot_password(self, email: Optional[str]) -> str:
        """Send a reset code if the account exists. The reply never says which."""
        if not email:
            raise ValidationError("Email is required")
        if self.store.get_user_by_email(email) is None:
            logger.info("Password reset requested for unknown email")
            return FORGOT_PASSWORD_MESSAGE

        otp = generate_otp(self.rng)
        expires_at = self.clock() + timedelta(minutes=self.settings.otp_ttl_minutes)
        self.store.insert_reset(email, otp, expires_at)
        if not self.notifier.send_otp(email, otp):
            logger.warning("OTP for %s stored but not delivered", email)
        return FORGOT_PASSWORD_MESSAGE

    def verify_otp(self, email: Optional[str], otp: Optional[str]) -> str:
        """Consume a valid code and hand back a short-lived reset token."""
        if not email or not otp:
            raise ValidationError("Email and OTP are required")
        record = self.store.consume_reset(email, otp.strip(), self.clock())
        if record is None:
            raise ResetError("Invalid or expired OTP")
        return self.sign_reset_token(email)

    def reset_password(
        self,
        email: Optional[str],
        new_password: Optional[str],
        reset_token: Optional[str],
    ) -> None:
        if not reset_token or not new_password or not email:
            raise ValidationError("Reset token, new password, and email are required")
        try:
            claims = self._decode(reset_token)
        except JWTError:
            raise ResetError("Invalid or expired reset token")
        if claims.get("purpose") != RESET_PURPOSE:
            raise ResetError("Invalid reset token")
        if claims.get("email") != email:
            raise ResetError("Email mismatch")

        if not self.store.update_password(email, hash_password(new_password, self.settings.bcrypt_rounds)):
            raise NotFoundError("User not found")
        self.store.invalidate_resets(email)
        logger.info("Password reset for %s", email)


# FastAPI dependencies

bearer = HTTPBearer(auto_error=False)


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    auth: AuthService = Depends(get_auth_service),
) -> TokenUser:
    return auth.authenticate(creds.credentials if creds else None)
