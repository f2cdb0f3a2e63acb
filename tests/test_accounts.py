"""Tests for shadow account provisioning (email is the idempotency key)."""

import logging
import sqlite3

import pytest

from src.core import db
from src.core import accounts
from src.core.accounts import ensure_account, verify_password


class TestEnsureAccount:
    def test_new_account(self):
        acct = ensure_account("new@prospect.fr", "Nouveau Prospect", "ACME")

        assert acct.created is True
        pw = acct.one_time_password
        assert len(pw) == 12 and pw.isalnum() and pw == pw.lower()
        assert verify_password(pw, db.get_password_hash(acct.account_id))
        profile = db.get_profile(acct.account_id)
        assert profile["role"] == "prospect"
        assert profile["full_name"] == "Nouveau Prospect"
        assert profile["company"] == "ACME"

    def test_same_email_twice_creates_one_account(self):
        first = ensure_account("same@prospect.fr", "Premier")
        second = ensure_account("same@prospect.fr", "Second")

        assert second.account_id == first.account_id
        assert second.created is False
        assert second.one_time_password is None
        assert db.count_users("same@prospect.fr") == 1

    def test_email_lookup_is_case_insensitive(self):
        first = ensure_account("Case@Prospect.fr", "Casse")
        assert ensure_account("case@prospect.fr", "Casse").account_id == first.account_id

    def test_backfills_missing_profile(self):
        uid = db.new_id()
        with db.get_db() as conn:
            conn.execute("INSERT INTO auth_users (id, email, name, created_at) VALUES (?,?,?,?)",
                         (uid, "legacy@prospect.fr", "Legacy", db.now_iso()))
        acct = ensure_account("legacy@prospect.fr", "Legacy User", "Old Co")

        assert acct.account_id == uid
        assert acct.created is False
        profile = db.get_profile(uid)
        assert profile["role"] == "prospect"
        assert profile["company"] == "Old Co"

    def test_lost_race_reuses_winner(self, monkeypatch):
        winner = ensure_account("race@prospect.fr", "Winner")
        real_lookup = db.get_user_by_email
        calls = {"n": 0}

        def stale_then_real(email):
            calls["n"] += 1
            return None if calls["n"] == 1 else real_lookup(email)

        monkeypatch.setattr(db, "get_user_by_email", stale_then_real)
        loser = ensure_account("race@prospect.fr", "Loser")

        assert loser.account_id == winner.account_id
        assert loser.created is False
        assert db.count_users("race@prospect.fr") == 1

    def test_email_stored_lowercase(self):
        acct = ensure_account("  Mixed.Case@Prospect.FR ", "Mixte")
        assert db.get_user(acct.account_id)["email"] == "mixed.case@prospect.fr"

    def test_lost_race_with_other_casing_reuses_winner(self, monkeypatch):
        winner = ensure_account("Dup@Prospect.fr", "Winner")
        real_lookup = db.get_user_by_email
        calls = {"n": 0}

        def stale_then_real(email):
            calls["n"] += 1
            return None if calls["n"] == 1 else real_lookup(email)

        monkeypatch.setattr(db, "get_user_by_email", stale_then_real)
        loser = ensure_account("dup@PROSPECT.fr", "Loser")

        assert loser.account_id == winner.account_id
        assert loser.created is False
        assert db.count_users("dup@prospect.fr") == 1

    def test_unique_email_ignores_case(self):
        ensure_account("unique@prospect.fr", "Premier")
        with pytest.raises(sqlite3.IntegrityError):
            db.insert_account(db.new_id(), "UNIQUE@prospect.fr", "Second", None, "x")


class TestPasswordHandling:
    def test_password_never_logged(self, caplog):
        caplog.set_level(logging.DEBUG)
        acct = ensure_account("quiet@prospect.fr", "Quiet")
        assert acct.one_time_password not in caplog.text

    def test_password_not_in_repr(self):
        acct = ensure_account("repr@prospect.fr", "Repr")
        assert acct.one_time_password not in repr(acct)

    def test_hash_roundtrip(self):
        h = accounts.hash_password("secret123")
        assert h.startswith("$2")
        assert verify_password("secret123", h)
        assert not verify_password("wrong", h)

    def test_verify_with_garbage_hash(self):
        assert verify_password("x", "not-a-bcrypt-hash") is False
