"""
tests/test_cli.py -- The operator command line (main.py).

Each test points DATABASE_URL at a throwaway SQLite file and clears the
cached Settings so the CLI reads the patched environment.
"""

from __future__ import annotations

import io
from collections.abc import Generator

import pytest

from auth.hashing import hash_secret, verify_secret
from auth.models import User
from auth.providers import AuthProvider
from auth.store import UserStore
from auth.tokens import API_KEY_PREFIX, verify_token
from core.config import JWTConfig, get_settings
from core.errors import CryptoError
from main import main

from conftest import TEST_SECRET


@pytest.fixture
def db_url(tmp_path, monkeypatch) -> Generator[str, None, None]:
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    get_settings.cache_clear()
    yield url
    get_settings.cache_clear()


def _lines(out: str) -> dict[str, str]:
    fields = {}
    for line in out.splitlines():
        name, sep, value = line.partition(":")
        if sep:
            fields[name.strip()] = value.strip()
    return fields


def test_no_command_prints_help(capsys) -> None:
    assert main([]) == 1
    assert "sign-token" in capsys.readouterr().out


class TestSignToken:
    def test_prints_verifiable_token(self, db_url, capsys) -> None:
        assert main(["sign-token", "user-123"]) == 0
        token = capsys.readouterr().out.strip()
        assert verify_token(token, JWTConfig("HS256", secret_key=TEST_SECRET)) == "user-123"

    def test_non_local_provider_cannot_sign(self, db_url, monkeypatch, capsys) -> None:
        monkeypatch.setenv("AUTH_PROVIDER", "external_jwt")
        get_settings.cache_clear()
        assert main(["sign-token", "user-123"]) == 2
        assert "cannot issue tokens" in capsys.readouterr().err

    def test_signing_failure_exits_2(self, db_url, monkeypatch, capsys) -> None:
        def broken(self, user_id: str) -> str:
            raise CryptoError("failed to sign token: key rejected")

        monkeypatch.setattr(AuthProvider, "issue_token", broken)
        assert main(["sign-token", "user-123"]) == 2
        err = capsys.readouterr().err
        assert "[!] failed to sign token" in err
        assert "Traceback" not in err

    def test_bad_configuration_exits_2(self, db_url, monkeypatch, capsys) -> None:
        monkeypatch.setenv("AUTH_PROVIDER", "bogus")
        get_settings.cache_clear()
        with pytest.raises(SystemExit) as excinfo:
            main(["sign-token", "user-123"])
        assert excinfo.value.code == 2
        assert "Configuration error" in capsys.readouterr().err


class TestHashSecret:
    def test_hashes_piped_stdin(self, monkeypatch, capsys) -> None:
        monkeypatch.setattr("sys.stdin", io.StringIO("hunter2\n"))
        assert main(["hash-secret"]) == 0
        encoded = capsys.readouterr().out.strip()
        assert encoded.startswith("$argon2id$")
        assert verify_secret("hunter2", encoded)

    def test_refuses_empty_secret(self, monkeypatch, capsys) -> None:
        monkeypatch.setattr("sys.stdin", io.StringIO("\n"))
        assert main(["hash-secret"]) == 1
        assert "empty" in capsys.readouterr().err


class TestGenerateApiKey:
    def test_unstored_key(self, capsys) -> None:
        assert main(["generate-api-key"]) == 0
        fields = _lines(capsys.readouterr().out)
        assert fields["key"].startswith(API_KEY_PREFIX)
        assert fields["prefix"] == fields["key"][:12]
        assert verify_secret(fields["key"], fields["hash"])

    def test_stored_for_user(self, db_url, capsys) -> None:
        store = UserStore(db_url=db_url)
        try:
            uid = store.create_user(User(user_id="", username="cli-user", hashed_password=hash_secret("pw")))
            rc = main(["generate-api-key", "--user-id", uid, "--scope", "read_urls", "--scope", "read_urls"])
            assert rc == 0
            fields = _lines(capsys.readouterr().out)
            keys = store.get_api_keys(uid)
        finally:
            store.close()
        assert len(keys) == 1
        assert keys[0].id == fields["id"]
        assert keys[0].scopes == ["read_urls"]
        assert verify_secret(fields["key"], keys[0].secret_hash)

    def test_unknown_user(self, db_url, capsys) -> None:
        assert main(["generate-api-key", "--user-id", "ghost", "--scope", "read_urls"]) == 1
        assert "No user" in capsys.readouterr().err

    def test_scope_required_when_storing(self, db_url, capsys) -> None:
        assert main(["generate-api-key", "--user-id", "someone"]) == 1

    def test_invalid_scope_rejected_by_parser(self, capsys) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(["generate-api-key", "--user-id", "someone", "--scope", "admin"])
        assert excinfo.value.code == 2


def test_cleanup(db_url, capsys) -> None:
    assert main(["cleanup"]) == 0
    assert "Removed 0 hourly and 0 monthly" in capsys.readouterr().out
