"""
tests/test_cli.py -- Admin command line: create-admin, unlock, revoke-sessions.

Each test points the CLI at the same named in-memory database the
principal_store fixture holds open, and at fakeredis for session revocation.
"""

from __future__ import annotations

import json

import fakeredis
import pytest

import main as cli
from auth.models import Session
from cache.redis_client import session_key, user_sessions_key


@pytest.fixture
def passwords(monkeypatch):
    """Queue answers for getpass.getpass prompts."""
    answers: list[str] = []
    monkeypatch.setattr("getpass.getpass", lambda prompt="": answers.pop(0))
    return answers


def _run(db_url: str, *args: str) -> int:
    return cli.main(["--database-url", db_url, *args])


def test_create_admin(db_url, principal_store, passwords, capsys):
    passwords.extend(["Adm1n!pass", "Adm1n!pass"])

    assert _run(db_url, "create-admin", "--email", "Boss@Example.com", "--name", "Boss") == 0

    admin = principal_store.find_by_email("boss@example.com")
    assert admin is not None
    assert admin.role == "admin"
    assert "Admin created" in capsys.readouterr().out


def test_create_admin_prompts_for_missing_fields(db_url, principal_store, passwords, monkeypatch):
    prompts = iter(["me@example.com", "Me"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(prompts))
    passwords.extend(["Adm1n!pass", "Adm1n!pass"])

    assert _run(db_url, "create-admin") == 0
    assert principal_store.find_by_email("me@example.com").name == "Me"


def test_create_admin_rejects_weak_password(db_url, principal_store, passwords, capsys):
    passwords.append("password")

    assert _run(db_url, "create-admin", "--email", "a@example.com", "--name", "A") == 1
    assert principal_store.find_by_email("a@example.com") is None
    assert "uppercase" in capsys.readouterr().out


def test_create_admin_rejects_mismatched_confirmation(db_url, principal_store, passwords):
    passwords.extend(["Adm1n!pass", "Adm1n!pasS"])
    assert _run(db_url, "create-admin", "--email", "a@example.com", "--name", "A") == 1
    assert not principal_store.has_admin()


def test_only_one_admin(db_url, make_principal, passwords, capsys):
    make_principal("first@example.com", "Adm1n!pass", role="admin")
    assert _run(db_url, "create-admin", "--email", "second@example.com", "--name", "B") == 1
    assert "already exists" in capsys.readouterr().out


def test_unlock_clears_lockout(db_url, principal_store, make_principal):
    pid = make_principal("u@example.com", "Passw0rd!")
    for _ in range(5):
        principal_store.increment_failed_attempts(pid, 5, 1800)
    assert principal_store.get_by_id(pid).lock_until is not None

    assert _run(db_url, "unlock", "U@example.com") == 0

    principal = principal_store.get_by_id(pid)
    assert principal.failed_login_attempts == 0
    assert principal.lock_until is None


def test_unlock_unknown_user(db_url, principal_store):
    assert _run(db_url, "unlock", "ghost@example.com") == 1


def test_revoke_sessions(db_url, make_principal, redis_server, redis_sync, monkeypatch, capsys):
    pid = make_principal("u@example.com", "Passw0rd!")
    for i in range(2):
        record = Session(
            session_id=f"s{i}",
            user_id=pid,
            email="u@example.com",
            role="viewer",
            user_agent="ua",
            ip_address="10.0.0.1",
            created_at=0,
            expires_at=2**41,
        )
        redis_sync.set(session_key(record.session_id), json.dumps(record.to_dict()))
        redis_sync.sadd(user_sessions_key(pid), record.session_id)
    monkeypatch.setattr(
        cli, "create_client", lambda url, **kw: fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    )

    assert _run(db_url, "revoke-sessions", "u@example.com") == 0

    assert redis_sync.keys("session:*") == []
    assert "Revoked 2 session(s)" in capsys.readouterr().out


def test_revoke_sessions_when_redis_is_down(db_url, make_principal, redis_server, monkeypatch, capsys):
    make_principal("u@example.com", "Passw0rd!")
    redis_server.connected = False
    monkeypatch.setattr(
        cli, "create_client", lambda url, **kw: fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    )

    assert _run(db_url, "revoke-sessions", "u@example.com") == 1
    assert "unreachable" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert cli.main([]) == 2
    assert "create-admin" in capsys.readouterr().out
