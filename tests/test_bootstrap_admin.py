"""Tests for scripts/bootstrap_admin.py."""

import importlib.util
from pathlib import Path

import pytest

from bloggerhub.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.parametrize(
    "password, ok",
    [
        ("Sh0rt!", False),
        ("alllowercaseletters", False),
        ("lowercase-and-digits-123", True),
        ("MixedCaseWithDigits9", True),
    ],
)
def test_validate_password(bootstrap, password, ok):
    assert bootstrap.validate_password(password) is ok


def test_creates_admin(bootstrap):
    result = bootstrap.bootstrap_admin("root", "root@example.com", "RootPassword-1")

    assert result["status"] == "created"
    user = get_runtime().store.get_user(result["user_id"])
    assert "ADMIN_USER" in user.roles
    assert get_runtime().auth.login("root", "RootPassword-1").user_id == user.id


def test_existing_user_is_not_promoted(bootstrap):
    user = get_runtime().auth.create_user("alice", "alice@example.com", "AlicePassword1")

    result = bootstrap.bootstrap_admin("alice", "alice@example.com", "ignored-Password1")

    assert result["status"] == "exists"
    assert get_runtime().store.get_user(user.id).roles == ["FREE_USER"]


def test_existing_admin_is_left_alone(bootstrap):
    created = bootstrap.bootstrap_admin("root", "root@example.com", "RootPassword-1")

    again = bootstrap.bootstrap_admin("root", "root@example.com", "OtherPassword-2")

    assert again == {"user_id": created["user_id"], "username": "root", "status": "already_admin"}
    assert get_runtime().auth.login("root", "RootPassword-1").user_id == created["user_id"]


def test_main_fails_for_existing_non_admin(bootstrap, capsys):
    get_runtime().auth.create_user("alice", "alice@example.com", "AlicePassword1")

    code = bootstrap.main(
        ["--username", "alice", "--email", "alice@example.com", "--password", "RootPassword-1"]
    )

    assert code == 1
    assert "already exists without ADMIN_USER" in capsys.readouterr().out
    assert get_runtime().store.get_user_by_username("alice").roles == ["FREE_USER"]


def test_dry_run_changes_nothing(bootstrap):
    result = bootstrap.bootstrap_admin("root", "root@example.com", "RootPassword-1", dry_run=True)

    assert result == {"user_id": None, "username": "root", "status": "dry_run"}
    assert get_runtime().store.users == {}


def test_main_requires_arguments(bootstrap, monkeypatch):
    for name in ("ADMIN_USERNAME", "ADMIN_EMAIL", "ADMIN_PASSWORD"):
        monkeypatch.delenv(name, raising=False)
    assert bootstrap.main([]) == 1


def test_main_rejects_weak_password(bootstrap):
    assert bootstrap.main(["--username", "root", "--email", "r@example.com", "--password", "weak"]) == 1


def test_main_creates_user(bootstrap, capsys):
    code = bootstrap.main(
        ["--username", "root", "--email", "Root@Example.com", "--password", "RootPassword-1"]
    )

    assert code == 0
    assert "Admin user created successfully" in capsys.readouterr().out
    assert get_runtime().store.get_user_by_username("root").email == "root@example.com"
