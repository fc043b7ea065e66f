"""
tests/test_account_routes.py -- Integration tests for /api/v1/account/*.

Coverage:
  - Email is stored only as a Field Cipher blob and decrypted on read
  - A tampered blob degrades to email=null; the rest of the profile survives
  - Without a usable ENCRYPTION_KEY the write fails closed (500, nothing stored)
  - Display name update
  - Password change re-checks the current password; username change keeps the session
  - Input validation
"""

from __future__ import annotations

import base64
import os

from auth.cipher import FieldCipher

PROFILE = "/api/v1/account/profile"
EMAIL = "/api/v1/account/email"
PASSWORD = "/api/v1/account/password"
USERNAME = "/api/v1/account/username"


def _tamper(blob: str) -> str:
    raw = bytearray(base64.b64decode(blob))
    raw[-1] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


class TestProfile:
    def test_profile_requires_session(self, harness) -> None:
        assert harness.client.get(PROFILE).status_code == 401

    def test_profile_without_email(self, harness) -> None:
        harness.login("plain")
        body = harness.client.get(PROFILE).json()
        assert body["username"] == "plain"
        assert body["role"] == "user"
        assert body["email"] is None


class TestEmailEncryption:
    def test_email_round_trip(self, harness) -> None:
        harness.login("plain")
        resp = harness.client.put(EMAIL, json={"email": "plain@example.com"})
        assert resp.status_code == 200
        assert resp.json()["email"] == "plain@example.com"
        assert harness.client.get(PROFILE).json()["email"] == "plain@example.com"

    def test_email_encrypted_at_rest(self, harness) -> None:
        harness.login("plain")
        harness.client.put(EMAIL, json={"email": "plain@example.com"})

        stored = harness.user_store.get_by_username("plain").email
        assert stored is not None
        assert "plain@example.com" not in stored
        assert FieldCipher(os.environ["ENCRYPTION_KEY"]).decrypt(stored) == "plain@example.com"

    def test_tampered_blob_reads_as_null(self, harness) -> None:
        harness.login("plain")
        harness.client.put(EMAIL, json={"email": "plain@example.com"})
        plain = harness.user_store.get_by_username("plain")
        harness.user_store.update_user(plain.id, email=_tamper(plain.email))

        resp = harness.client.get(PROFILE)
        assert resp.status_code == 200
        body = resp.json()
        assert body["email"] is None
        assert body["username"] == "plain"

    def test_rotated_key_reads_as_null(self, harness) -> None:
        harness.login("plain")
        harness.client.put(EMAIL, json={"email": "plain@example.com"})
        harness.set_cipher(FieldCipher("rotated-encryption-key-abcdefghijklmnop"))
        assert harness.client.get(PROFILE).json()["email"] is None

    def test_unconfigured_cipher_refuses_write(self, harness) -> None:
        harness.set_cipher(FieldCipher(""))
        harness.login("plain")

        resp = harness.client.put(EMAIL, json={"email": "plain@example.com"})
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "encryption_unavailable"
        assert harness.user_store.get_by_username("plain").email is None

    def test_invalid_email_rejected(self, harness) -> None:
        harness.login("plain")
        assert harness.client.put(EMAIL, json={"email": "not-an-email"}).status_code == 422

    def test_admin_list_never_shows_email(self, harness) -> None:
        harness.login("root")
        harness.client.put(EMAIL, json={"email": "root@example.com"})
        accounts = harness.client.get("/api/v1/admin/accounts").json()
        root = next(a for a in accounts if a["username"] == "root")
        assert root["has_email"] is True
        assert "email" not in root


class TestDisplayName:
    def test_update_display_name(self, harness) -> None:
        harness.login("plain")
        resp = harness.client.put("/api/v1/account/display-name", json={"display_name": "  Plain User "})
        assert resp.status_code == 200
        assert resp.json()["display_name"] == "Plain User"
        assert harness.user_store.get_by_username("plain").display_name == "Plain User"

    def test_empty_display_name_rejected(self, harness) -> None:
        harness.login("plain")
        resp = harness.client.put("/api/v1/account/display-name", json={"display_name": "   "})
        assert resp.status_code == 422


class TestPasswordChange:
    def test_wrong_current_password(self, harness) -> None:
        harness.login("plain")
        before = harness.user_store.get_by_username("plain").hashed_password

        resp = harness.client.put(
            PASSWORD, json={"current_password": "not-my-password", "new_password": "brand-new-password"}
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"
        assert harness.user_store.get_by_username("plain").hashed_password == before

    def test_change_then_log_in_again(self, harness) -> None:
        harness.login("plain")
        resp = harness.client.put(
            PASSWORD, json={"current_password": "plain-password-123", "new_password": "brand-new-password"}
        )
        assert resp.status_code == 200

        harness.client.post("/api/v1/auth/logout")
        assert harness.login("plain", "plain-password-123").status_code == 401
        assert harness.login("plain", "brand-new-password").status_code == 200

    def test_new_password_too_short(self, harness) -> None:
        harness.login("plain")
        resp = harness.client.put(PASSWORD, json={"current_password": "plain-password-123", "new_password": "short"})
        assert resp.status_code == 422

    def test_requires_session(self, harness) -> None:
        resp = harness.client.put(
            PASSWORD, json={"current_password": "plain-password-123", "new_password": "brand-new-password"}
        )
        assert resp.status_code == 401


class TestUsernameChange:
    def test_rename_keeps_session(self, harness) -> None:
        harness.login("plain")
        resp = harness.client.put(USERNAME, json={"new_username": "renamed"})
        assert resp.status_code == 200
        assert resp.json()["username"] == "renamed"

        status = harness.client.get("/api/v1/auth/status").json()
        assert status["user"]["username"] == "renamed"
        assert harness.client.get(PROFILE).json()["username"] == "renamed"
        assert harness.user_store.get_by_username("plain") is None

    def test_taken_username(self, harness) -> None:
        harness.login("plain")
        resp = harness.client.put(USERNAME, json={"new_username": "viewer"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"
        assert harness.client.get(PROFILE).json()["username"] == "plain"

    def test_invalid_username(self, harness) -> None:
        harness.login("plain")
        assert harness.client.put(USERNAME, json={"new_username": "no spaces"}).status_code == 422
