"""Bearer token verification backed by the Firebase Admin SDK.

The Firebase app is process-wide state. It is created once, explicitly, by
:meth:`IdentityVerifier.initialise` during application start-up and reused by
every request afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import firebase_admin
from firebase_admin import auth, credentials
from firebase_admin import exceptions as firebase_exceptions

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_CERTS_URL = "https://www.googleapis.com/oauth2/v1/certs"


class InvalidTokenError(Exception):
    """Raised when a bearer token is missing, malformed or rejected."""


@dataclass(slots=True, frozen=True)
class VerifiedIdentity:
    uid: str
    email: str | None = None
    name: str | None = None


@dataclass(slots=True, frozen=True)
class FirebaseCredentials:
    """Service account credentials, either a file path or inline values."""

    credentials_file: str | None = None
    project_id: str | None = None
    private_key: str | None = None
    client_email: str | None = None
    client_id: str | None = None
    client_cert_url: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "FirebaseCredentials | None":
        if not settings.has_firebase_credentials:
            return None
        return cls(
            credentials_file=settings.firebase_credentials_file,
            project_id=settings.firebase_project_id,
            private_key=settings.firebase_private_key,
            client_email=settings.firebase_client_email,
            client_id=settings.firebase_client_id,
            client_cert_url=settings.firebase_client_cert_url,
        )

    def service_account(self) -> str | dict[str, Any]:
        """Return what ``credentials.Certificate`` accepts for these values."""

        if self.credentials_file:
            return self.credentials_file
        private_key = (self.private_key or "").replace("\\n", "\n")
        return {
            "type": "service_account",
            "project_id": self.project_id,
            "private_key": private_key,
            "client_email": self.client_email,
            "client_id": self.client_id,
            "auth_uri": GOOGLE_AUTH_URI,
            "token_uri": GOOGLE_TOKEN_URI,
            "auth_provider_x509_cert_url": GOOGLE_CERTS_URL,
            "client_x509_cert_url": self.client_cert_url,
        }


class IdentityVerifier:
    """Verify Firebase ID tokens on behalf of protected routes."""

    def __init__(self, firebase_credentials: FirebaseCredentials):
        self._credentials = firebase_credentials
        self._app: firebase_admin.App | None = None

    def initialise(self) -> firebase_admin.App:
        """Create the default Firebase app unless one already exists."""

        if self._app is not None:
            return self._app
        try:
            self._app = firebase_admin.get_app()
        except ValueError:
            certificate = credentials.Certificate(self._credentials.service_account())
            self._app = firebase_admin.initialize_app(certificate)
            logger.info("Initialised Firebase Admin SDK")
        return self._app

    async def verify(self, token: str) -> VerifiedIdentity:
        if not token:
            raise InvalidTokenError("Missing bearer token")
        app = self.initialise()
        try:
            decoded = await asyncio.to_thread(auth.verify_id_token, token, app=app)
        except (ValueError, firebase_exceptions.FirebaseError) as exc:
            raise InvalidTokenError("Token verification failed") from exc
        return VerifiedIdentity(
            uid=str(decoded["uid"]),
            email=decoded.get("email"),
            name=decoded.get("name") or decoded.get("displayName"),
        )


def bearer_token(header_value: str | None) -> str:
    """Extract the token from an ``Authorization: Bearer ...`` header."""

    if not header_value or not header_value.startswith("Bearer "):
        raise InvalidTokenError("Missing bearer token")
    token = header_value[len("Bearer ") :].strip()
    if not token:
        raise InvalidTokenError("Missing bearer token")
    return token


@lru_cache
def get_identity_verifier() -> IdentityVerifier | None:
    """Return the process-wide verifier, or ``None`` without credentials."""

    firebase_credentials = FirebaseCredentials.from_settings(get_settings())
    if firebase_credentials is None:
        logger.info("Firebase credentials not configured; authenticated routes are disabled")
        return None
    return IdentityVerifier(firebase_credentials)
