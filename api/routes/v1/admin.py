"""
api/routes/v1/admin.py -- Account and role administration.

Routes:
  GET    /api/v1/admin/accounts              -- manage_accounts OR view_accounts
  POST   /api/v1/admin/accounts              -- manage_accounts
  PUT    /api/v1/admin/accounts/{username}   -- manage_accounts
  DELETE /api/v1/admin/accounts/{username}   -- manage_accounts
  GET    /api/v1/admin/roles                 -- manage_roles
  POST   /api/v1/admin/roles                 -- manage_roles
  PUT    /api/v1/admin/roles/{role_id}       -- manage_roles
  DELETE /api/v1/admin/roles/{role_id}       -- manage_roles

Role edits take effect on the next permission check for every holder of the
role -- nothing is cached between the store and require_permission().

Escalation rules:
  - Only a superadmin may create, edit, delete or promote to a superadmin.
  - Granting WILDCARD or ADMIN_ALL, directly or through a role, requires a
    caller who is already unrestricted.
  - The last active unrestricted account cannot be deleted, deactivated or
    stripped of its unrestricted grants.
  - Nobody deletes or deactivates their own account from here.
  - A role still held by any account cannot be deleted.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import AccountCreate, AccountSummary, AccountUpdate, RoleCreate, RoleResponse, RoleUpdate
from auth.cipher import FieldCipher
from auth.dependencies import require_permission
from auth.errors import EncryptionMisconfigured, PermissionDenied
from auth.models import AccountRole, Principal, Role
from auth.permissions import (
    MANAGE_ACCOUNTS,
    MANAGE_ROLES,
    VIEW_ACCOUNTS,
    is_escalating,
    is_superadmin,
    is_unrestricted,
)
from auth.store import UserStore
from auth.tokens import hash_password

logger = logging.getLogger("hive.security")

router = APIRouter()


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "bad_request", "message": message})


def _not_found(message: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": message})


def _check_grant_escalation(
    store: UserStore,
    principal: Principal,
    target: str,
    permissions: Iterable[str] = (),
    role_ids: Iterable[str] = (),
) -> None:
    """Refuse WILDCARD / ADMIN_ALL grants from a caller who does not hold them."""
    if is_unrestricted(principal, store.get_role_permissions):
        return
    if is_escalating(permissions) or any(is_escalating(store.get_role_permissions(r)) for r in role_ids):
        logger.warning(
            "Attempt to assign wildcard without permission admin=%s target=%s",
            principal.username,
            target,
        )
        raise PermissionDenied("Only an unrestricted administrator can grant wildcard permissions.")


def _unrestricted_count(store: UserStore) -> int:
    lookup = store.get_role_permissions
    return sum(1 for p in store.list_users() if p.is_active and is_unrestricted(p, lookup))


def _load_account(store: UserStore, username: str) -> Principal:
    target = store.get_by_username(username)
    if target is None:
        raise _not_found("Account not found.")
    return target


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.get("/admin/accounts", response_model=list[AccountSummary])
def list_accounts(
    request: Request,
    principal: Principal = Depends(require_permission(MANAGE_ACCOUNTS, VIEW_ACCOUNTS)),
) -> list[AccountSummary]:
    return [AccountSummary.from_principal(p) for p in request.app.state.user_store.list_users()]


@router.post("/admin/accounts", response_model=AccountSummary, status_code=201)
def create_account(
    request: Request,
    body: AccountCreate,
    principal: Principal = Depends(require_permission(MANAGE_ACCOUNTS)),
) -> AccountSummary:
    if body.role is AccountRole.SUPERADMIN and not is_superadmin(principal):
        raise PermissionDenied("Only a superadmin can create superadmin accounts.")

    store = request.app.state.user_store
    _check_grant_escalation(store, principal, body.username, body.permissions, body.roles)
    try:
        user_id = store.create_user(
            Principal(
                username=body.username,
                role=body.role,
                permissions=frozenset(body.permissions),
                role_ids=frozenset(body.roles),
                hashed_password=hash_password(body.password),
            ),
            created_by=principal.username,
        )
    except IntegrityError:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "Username is already taken."},
        ) from None

    logger.info(
        "Account created by admin admin=%s username=%s role=%s",
        principal.username,
        body.username,
        body.role.value,
    )
    return AccountSummary.from_principal(store.get_by_id(user_id))


@router.put("/admin/accounts/{username}", response_model=AccountSummary)
def update_account(
    request: Request,
    username: str,
    body: AccountUpdate,
    principal: Principal = Depends(require_permission(MANAGE_ACCOUNTS)),
) -> AccountSummary:
    """Edit another account. Validation happens in full before anything is written."""
    store = request.app.state.user_store
    target = _load_account(store, username)

    if not is_superadmin(principal) and (is_superadmin(target) or body.role is AccountRole.SUPERADMIN):
        raise PermissionDenied("Only a superadmin can modify superadmin accounts.")
    if body.is_active is False and target.id == principal.id:
        raise _bad_request("You cannot deactivate your own account.")
    _check_grant_escalation(store, principal, username, body.permissions or (), body.roles or ())

    changes = {}
    if body.role is not None:
        changes["role"] = body.role
    if body.is_active is not None:
        changes["is_active"] = body.is_active
    if body.permissions is not None:
        changes["permissions"] = frozenset(body.permissions)
    if body.roles is not None:
        changes["role_ids"] = frozenset(body.roles)
    after = dataclasses.replace(target, **changes)

    lookup = store.get_role_permissions
    losing_unrestricted = (
        target.is_active
        and is_unrestricted(target, lookup)
        and not (after.is_active and is_unrestricted(after, lookup))
    )
    if losing_unrestricted and _unrestricted_count(store) <= 1:
        raise _bad_request("Cannot remove the last unrestricted administrator.")

    fields = {}
    if body.email is not None:
        cipher: FieldCipher = request.app.state.field_cipher
        if not cipher.is_configured():
            logger.error("Email encryption not configured -- refusing to store email username=%s", username)
            raise EncryptionMisconfigured()
        fields["email"] = cipher.encrypt(body.email)
    if body.display_name is not None:
        fields["display_name"] = body.display_name
    if body.new_password is not None:
        fields["hashed_password"] = hash_password(body.new_password)
    if body.role is not None:
        fields["role"] = body.role
    if body.is_active is not None:
        fields["is_active"] = body.is_active

    if fields:
        store.update_user(target.id, **fields)
    if body.permissions is not None:
        store.set_user_permissions(target.id, body.permissions)
    if body.roles is not None:
        store.set_user_roles(target.id, body.roles)

    logger.info(
        "Account updated by admin admin=%s username=%s fields=%s",
        principal.username,
        username,
        sorted(body.model_dump(exclude_none=True)),
    )
    return AccountSummary.from_principal(store.get_by_id(target.id))


@router.delete("/admin/accounts/{username}")
def delete_account(
    request: Request,
    username: str,
    principal: Principal = Depends(require_permission(MANAGE_ACCOUNTS)),
) -> dict:
    store = request.app.state.user_store
    target = _load_account(store, username)

    if target.id == principal.id:
        raise _bad_request("You cannot delete your own account.")
    if is_superadmin(target) and not is_superadmin(principal):
        raise PermissionDenied("Only a superadmin can delete superadmin accounts.")
    if (
        target.is_active
        and is_unrestricted(target, store.get_role_permissions)
        and _unrestricted_count(store) <= 1
    ):
        raise _bad_request("Cannot delete the last unrestricted administrator.")

    store.delete_user(target.id)
    logger.info("Account deleted by admin admin=%s username=%s", principal.username, username)
    return {"message": f"Account {username} deleted."}


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/admin/roles", response_model=list[RoleResponse])
def list_roles(
    request: Request,
    principal: Principal = Depends(require_permission(MANAGE_ROLES)),
) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in request.app.state.user_store.list_roles()]


@router.post("/admin/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    principal: Principal = Depends(require_permission(MANAGE_ROLES)),
) -> RoleResponse:
    store = request.app.state.user_store
    _check_grant_escalation(store, principal, body.name, body.permissions)
    try:
        role_id = store.create_role(
            Role(
                name=body.name,
                permissions=frozenset(body.permissions),
                description=body.description,
                created_by=principal.username,
            )
        )
    except IntegrityError:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A role with this name already exists."},
        ) from None

    logger.info(
        "Role created by admin admin=%s role_id=%s name=%s permissions=%s",
        principal.username,
        role_id,
        body.name,
        sorted(body.permissions),
    )
    return RoleResponse.from_role(store.get_role(role_id))


@router.put("/admin/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: str,
    body: RoleUpdate,
    principal: Principal = Depends(require_permission(MANAGE_ROLES)),
) -> RoleResponse:
    store = request.app.state.user_store
    _check_grant_escalation(store, principal, role_id, body.permissions or ())
    try:
        found = store.update_role(
            role_id,
            name=body.name,
            description=body.description,
            permissions=body.permissions,
        )
    except IntegrityError:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A role with this name already exists."},
        ) from None
    if not found:
        raise _not_found("Role not found.")

    logger.info("Role updated by admin admin=%s role_id=%s", principal.username, role_id)
    return RoleResponse.from_role(store.get_role(role_id))


@router.delete("/admin/roles/{role_id}")
def delete_role(
    request: Request,
    role_id: str,
    principal: Principal = Depends(require_permission(MANAGE_ROLES)),
) -> dict:
    store = request.app.state.user_store
    role = store.get_role(role_id)
    if role is None:
        raise _not_found("Role not found.")

    holders = store.count_role_holders(role_id)
    if holders:
        raise _bad_request(
            f"This role is still assigned to {holders} user(s). Remove it from them before deleting."
        )

    store.delete_role(role_id)
    logger.info("Role deleted by admin admin=%s role_id=%s name=%s", principal.username, role_id, role.name)
    return {"message": f"Role {role.name} deleted."}
