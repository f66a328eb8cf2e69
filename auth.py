import logging
import time
from dataclasses import dataclass
from typing import Optional

import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeSerializer, URLSafeTimedSerializer
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings
from models import Profile
from schemas import SignupIn

logger = logging.getLogger(__name__)


class AuthExpired(Exception):
    """The access token is missing, expired or invalid."""


class ReauthenticationRequired(Exception):
    """The session could not be refreshed; the user has to log in again."""


@dataclass(frozen=True)
class SessionTokens:
    access: str
    refresh: str


class SessionManager:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._access = URLSafeTimedSerializer(settings.secret_key, salt="access-token")
        self._refresh = URLSafeTimedSerializer(settings.secret_key, salt="refresh-token")

    def issue(self, user_id: int) -> SessionTokens:
        return SessionTokens(
            access=self._access.dumps({"u": user_id}),
            refresh=self._refresh.dumps({"u": user_id}),
        )

    def verify(self, access_token: Optional[str]) -> int:
        if not access_token:
            raise AuthExpired("No access token")
        try:
            data = self._access.loads(
                access_token, max_age=self.settings.access_token_ttl_secs
            )
        except SignatureExpired as exc:
            raise AuthExpired("Access token expired") from exc
        except BadSignature as exc:
            raise AuthExpired("Invalid access token") from exc
        return int(data["u"])

    def refresh(self, refresh_token: Optional[str]) -> SessionTokens:
        if not refresh_token:
            raise ReauthenticationRequired("No refresh token")
        try:
            data = self._refresh.loads(
                refresh_token, max_age=self.settings.refresh_token_ttl_secs
            )
        except BadSignature as exc:
            raise ReauthenticationRequired("Session refresh failed") from exc
        return self.issue(int(data["u"]))


class UserSession:
    """Per-request session state: verifies the access token and refreshes it at most once."""

    def __init__(
        self,
        manager: SessionManager,
        access_token: Optional[str],
        refresh_token: Optional[str],
    ) -> None:
        self.manager = manager
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.refreshed = False
        self._refresh_attempted = False

    def user_id(self) -> int:
        return self.manager.verify(self.access_token)

    def refresh(self) -> None:
        if self._refresh_attempted:
            raise ReauthenticationRequired("Session already refreshed once")
        self._refresh_attempted = True
        try:
            tokens = self.manager.refresh(self.refresh_token)
        except ReauthenticationRequired:
            logger.warning("session_refresh: result=failed")
            raise
        self.access_token = tokens.access
        self.refresh_token = tokens.refresh
        self.refreshed = True
        logger.info("session_refresh: result=ok")

    @property
    def tokens(self) -> SessionTokens:
        return SessionTokens(access=self.access_token or "", refresh=self.refresh_token or "")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def signup(self, data: SignupIn) -> Profile:
        existing = self.session.scalar(
            select(Profile).where(func.lower(Profile.username) == data.username.lower())
        )
        if existing:
            raise ValueError("Username is already taken")
        profile = Profile(
            username=data.username,
            full_name=(data.full_name or "").strip() or None,
            password_hash=hash_password(data.password),
        )
        self.session.add(profile)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ValueError("Username is already taken") from exc
        self.session.refresh(profile)
        logger.info(f"signup: user_id={profile.id}")
        return profile

    def authenticate(self, username: str, password: str) -> Profile:
        profile = self.session.scalar(
            select(Profile).where(
                func.lower(Profile.username) == username.strip().lower()
            )
        )
        if not profile or not check_password(password, profile.password_hash):
            raise ValueError("Invalid username or password")
        return profile


def _csrf_serializer(settings: Settings) -> URLSafeSerializer:
    return URLSafeSerializer(settings.secret_key, salt="csrf-token")


def generate_csrf_token(settings: Settings, user_id: int, max_age_hours: int = 2) -> str:
    issued = int(time.time())
    return _csrf_serializer(settings).dumps(
        {"u": user_id, "ts": issued, "exp": issued + max_age_hours * 3600}
    )


def validate_csrf_token(settings: Settings, token: Optional[str], user_id: int) -> bool:
    if not token:
        return False
    try:
        data = _csrf_serializer(settings).loads(token)
    except BadSignature:
        return False
    if data.get("u") != user_id:
        return False
    return int(time.time()) <= int(data.get("exp", 0))
