"""
Identity verification.

Requests carry ``Authorization: Bearer <token>``. The token is handed to an
IdentityVerifier which returns the caller's stable user id or raises an
Unauthorized ServiceError. Production uses Firebase ID tokens.
"""

from abc import ABC, abstractmethod
import base64
from dataclasses import dataclass
import json
import logging
from typing import Optional

import firebase_admin
from fastapi import Header, Request
from firebase_admin import auth, credentials
from firebase_admin.exceptions import FirebaseError

from config import Settings
from errors import unauthorized

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    uid: str
    name: Optional[str] = None
    email: Optional[str] = None


class IdentityVerifier(ABC):
    """Maps a bearer credential to an Identity."""

    @abstractmethod
    def verify(self, token: str) -> Identity:
        ...


def initialize_firebase(settings: Settings) -> firebase_admin.App:
    """Return the default Firebase app, initialising it on first use."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    options = {}
    if settings.firebase_storage_bucket:
        options["storageBucket"] = settings.firebase_storage_bucket
    if settings.firebase_service_account:
        info = json.loads(base64.b64decode(settings.firebase_service_account).decode())
        cred = credentials.Certificate(info)
    else:
        cred = credentials.ApplicationDefault()
    return firebase_admin.initialize_app(cred, options)


class FirebaseIdentityVerifier(IdentityVerifier):
    def __init__(self, app: firebase_admin.App):
        self._app = app

    def verify(self, token: str) -> Identity:
        try:
            decoded = auth.verify_id_token(token, app=self._app)
        except (ValueError, FirebaseError) as exc:
            logger.warning("Error verifying ID token: %s", exc)
            raise unauthorized("Unauthorized: Invalid token") from exc
        return Identity(uid=decoded["uid"], name=decoded.get("name"), email=decoded.get("email"))


def current_identity(request: Request, authorization: Optional[str] = Header(None)) -> Identity:
    """FastAPI dependency resolving the authenticated caller."""
    if not authorization or not authorization.startswith("Bearer "):
        raise unauthorized()
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise unauthorized()
    return request.app.state.services.verifier.verify(token)
