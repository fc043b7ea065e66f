"""
api/routes/v1/account.py -- Self-service profile endpoints.

Routes:
  GET /api/v1/account/profile        -- own profile; email decrypted on the way out
  PUT /api/v1/account/email          -- encrypt and store a new email
  PUT /api/v1/account/display-name   -- plain field, no encryption
  PUT /api/v1/account/password       -- bcrypt re-check of the current password first
  PUT /api/v1/account/username       -- rename; the live session follows

Sensitive-field policy:
  Writes fail closed. With no usable ENCRYPTION_KEY, PUT /email raises
  EncryptionMisconfigured (500) and nothing is stored.
  Reads degrade. A blob that fails to decrypt (tampered, or written under a
  rotated key) becomes email=null; the rest of the profile is still returned.

A wrong current password answers 401 bad_credentials and changes nothing.
PUT /password shares the per-IP login throttle.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import DisplayNameUpdate, EmailUpdate, PasswordChange, ProfileResponse, UsernameUpdate
from auth.cipher import FieldCipher
from auth.dependencies import get_current_principal
from auth.errors import DecryptionFailed, EncryptionMisconfigured
from auth.models import Principal
from auth.tokens import hash_password, hash_session_id, read_session_cookie, verify_password
from core.config import get_settings

logger = logging.getLogger("hive.security")

_settings = get_settings()

# Auth policy: every route requires a session (get_current_principal).
router = APIRouter()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _profile(principal: Principal, cipher: FieldCipher, *, plaintext_email: str | None = None) -> ProfileResponse:
    email = plaintext_email
    if email is None and principal.email and cipher.is_configured():
        try:
            email = cipher.decrypt(principal.email)
        except DecryptionFailed:
            logger.error("Failed to decrypt email for user username=%s", principal.username)
    return ProfileResponse(
        username=principal.username,
        role=principal.role,
        email=email,
        display_name=principal.display_name,
        created_at=principal.created_at,
        updated_at=principal.updated_at,
    )


@router.get("/account/profile", response_model=ProfileResponse)
def get_profile(request: Request, principal: Principal = Depends(get_current_principal)) -> ProfileResponse:
    return _profile(principal, request.app.state.field_cipher)


@router.put("/account/email", response_model=ProfileResponse)
def update_email(
    request: Request,
    body: EmailUpdate,
    principal: Principal = Depends(get_current_principal),
) -> ProfileResponse:
    """Replace the caller's email. The store only ever sees the encrypted blob."""
    cipher: FieldCipher = request.app.state.field_cipher
    if not cipher.is_configured():
        logger.error("Email encryption not configured -- refusing to store email username=%s", principal.username)
        raise EncryptionMisconfigured()

    blob = cipher.encrypt(body.email)
    request.app.state.user_store.update_user(principal.id, email=blob)
    logger.info(
        "Email changed username=%s ip=%s",
        principal.username,
        _client_ip(request),
    )
    # The plaintext is already in hand; skip a second KDF round trip.
    updated = request.app.state.user_store.get_by_id(principal.id)
    return _profile(updated, cipher, plaintext_email=body.email)


@router.put("/account/display-name", response_model=ProfileResponse)
def update_display_name(
    request: Request,
    body: DisplayNameUpdate,
    principal: Principal = Depends(get_current_principal),
) -> ProfileResponse:
    store = request.app.state.user_store
    store.update_user(principal.id, display_name=body.display_name)
    return _profile(store.get_by_id(principal.id), request.app.state.field_cipher)


@limiter.limit(_settings.login_rate_limit)
@router.put("/account/password")
def change_password(
    request: Request,
    body: PasswordChange,
    principal: Principal = Depends(get_current_principal),
) -> dict:
    """Replace the caller's password after re-checking the current one."""
    if not principal.hashed_password or not verify_password(body.current_password, principal.hashed_password):
        logger.warning(
            "Password change rejected - wrong current password username=%s ip=%s",
            principal.username,
            _client_ip(request),
        )
        raise HTTPException(
            status_code=401,
            detail={"code": "bad_credentials", "message": "Current password is incorrect."},
        )

    request.app.state.user_store.update_user(principal.id, hashed_password=hash_password(body.new_password))
    logger.info("Password changed username=%s ip=%s", principal.username, _client_ip(request))
    return {"message": "Password changed."}


@router.put("/account/username", response_model=ProfileResponse)
def change_username(
    request: Request,
    body: UsernameUpdate,
    principal: Principal = Depends(get_current_principal),
) -> ProfileResponse:
    """Rename the caller. The live session follows the new name."""
    store = request.app.state.user_store
    try:
        store.update_user(principal.id, username=body.new_username)
    except IntegrityError:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "Username is already taken."},
        ) from None

    # Sessions resolve the principal by username; rewrite this one or it is orphaned.
    session = request.state.session
    session.username = body.new_username
    request.app.state.session_store.save(hash_session_id(read_session_cookie(request)), session)

    logger.info(
        "Username changed old=%s new=%s ip=%s",
        principal.username,
        body.new_username,
        _client_ip(request),
    )
    return _profile(store.get_by_id(principal.id), request.app.state.field_cipher)
