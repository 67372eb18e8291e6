import base64
import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional

from errors import ExpiredCredential, InvalidCredential

logger = logging.getLogger(__name__)


class Identity(NamedTuple):
    subject_id: str
    email: str


def _b64(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode()).decode().rstrip("=")


def _unb64(value: str) -> str:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode()).decode()


class SignedTokenVerifier:
    """HMAC-signed bearer tokens: subject|email|expiry|signature.

    The identity provider and this service share ``secret``. Subject and email
    are base64url-encoded so the separator can never appear inside them.
    """

    def __init__(self, secret: str, ttl_hours: int = 24 * 7):
        self.secret = secret
        self.ttl = timedelta(hours=ttl_hours)

    def _sign(self, payload: str) -> str:
        return hmac.new(self.secret.encode(), payload.encode(), hashlib.sha256).hexdigest()

    def issue(self, subject_id: str, email: str, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        expiry = int((now + self.ttl).timestamp())
        payload = f"{_b64(subject_id)}|{_b64(email)}|{expiry}"
        return f"{payload}|{self._sign(payload)}"

    def verify(self, token: str) -> Identity:
        parts = token.split("|") if token else []
        if len(parts) != 4:
            raise InvalidCredential("Invalid token format. Please login again.")
        subject, email, expiry, signature = parts
        payload = f"{subject}|{email}|{expiry}"
        if not hmac.compare_digest(self._sign(payload), signature):
            raise InvalidCredential("Invalid token. Please login again.")
        try:
            expires_at = int(expiry)
            identity = Identity(_unb64(subject), _unb64(email))
        except ValueError:
            raise InvalidCredential("Invalid token format. Please login again.")
        if expires_at < int(datetime.now(timezone.utc).timestamp()):
            raise ExpiredCredential()
        return identity


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise InvalidCredential("No token provided. Please login again.")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise InvalidCredential("No token provided. Please login again.")
    return token


def resolve_identity(authorization: Optional[str], verifier) -> Identity:
    """Turn an Authorization header into a verified (subject_id, email) pair."""
    identity = verifier.verify(bearer_token(authorization))
    logger.debug(f"Resolved identity for subject {identity.subject_id}")
    return identity
