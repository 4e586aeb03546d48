from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

import pytest

from atermes_token_sync.errors import PersistenceError
from atermes_token_sync.store import CredentialStore


def test_enabled_bindings_are_ordered_by_tenant(tmp_path: Path) -> None:
    with CredentialStore(str(tmp_path / "atermes.db")) as s:
        c1 = s.add_credential(email=" one@atermes.nl ", password="p1", totp_seed="SEED1")
        c2 = s.add_credential(email="two@atermes.nl", password="p2", totp_seed="SEED2")
        s.add_environment(tenant="zeta", credential_id=c1)
        s.add_environment(tenant="Alpha", credential_id=c1)
        s.add_environment(tenant="mid", credential_id=c2, enabled=False)

        enabled = s.list_enabled_bindings()
        everything = s.list_environments()

    assert [b.tenant for b in enabled] == ["alpha", "zeta"]
    assert enabled[0].credential.email == "one@atermes.nl"
    assert enabled[0].credential.totp_seed == "SEED1"
    assert [b.tenant for b in everything] == ["alpha", "mid", "zeta"]
    assert everything[1].enabled is False


def test_set_environment_enabled(tmp_path: Path) -> None:
    with CredentialStore(str(tmp_path / "atermes.db")) as s:
        cid = s.add_credential(email="one@atermes.nl", password="p", totp_seed="S")
        s.add_environment(tenant="acme", credential_id=cid, enabled=False)
        assert s.list_enabled_bindings() == []

        assert s.set_environment_enabled("acme", enabled=True) == 1
        assert [b.tenant for b in s.list_enabled_bindings()] == ["acme"]


def test_add_environment_validates_inputs(tmp_path: Path) -> None:
    with CredentialStore(str(tmp_path / "atermes.db")) as s:
        with pytest.raises(PersistenceError):
            s.add_environment(tenant="acme", credential_id="missing")

        cid = s.add_credential(email="one@atermes.nl", password="p", totp_seed="S")
        with pytest.raises(ValueError):
            s.add_environment(tenant="acme.atermes.nl", credential_id=cid)


def test_update_token_and_lookup_by_tenant(tmp_path: Path) -> None:
    at = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    with CredentialStore(str(tmp_path / "atermes.db")) as s:
        cid = s.add_credential(email="one@atermes.nl", password="p", totp_seed="S")
        s.add_environment(tenant="acme", credential_id=cid)
        assert s.get_token_for_tenant("acme") is None

        s.update_token(cid, "jwt-value", at)

        cred = s.get_credential(cid)
        assert cred is not None
        assert cred.last_token == "jwt-value"
        assert cred.last_token_set_at == at
        assert s.get_token_for_tenant("ACME") == "jwt-value"


def test_update_token_for_unknown_credential_raises(tmp_path: Path) -> None:
    with CredentialStore(str(tmp_path / "atermes.db")) as s:
        with pytest.raises(PersistenceError):
            s.update_token("nope", "jwt")


def test_run_history(tmp_path: Path) -> None:
    with CredentialStore(str(tmp_path / "atermes.db")) as s:
        assert s.last_run() is None
        rid = s.record_run_start()
        assert s.last_run() == (rid, None, None)
        s.record_run_finish(rid, ok=False, message="0/1 credentials ok")
        assert s.last_run() == (rid, False, "0/1 credentials ok")


def test_store_creates_backup(tmp_path: Path) -> None:
    db_path = tmp_path / "atermes.db"
    s = CredentialStore(str(db_path))
    try:
        rid = s.record_run_start()
        s.record_run_finish(rid, ok=True, message="test")
    finally:
        s.close()

    bak = tmp_path / "atermes.db.bak"
    assert db_path.exists()
    assert bak.exists()
    assert bak.stat().st_size > 0


def test_store_restores_from_backup_when_db_corrupted(tmp_path: Path) -> None:
    db_path = tmp_path / "atermes.db"

    s1 = CredentialStore(str(db_path))
    try:
        cid = s1.add_credential(email="one@atermes.nl", password="p", totp_seed="S", credential_id="cred-1")
        s1.add_environment(tenant="acme", credential_id=cid)
        rid = s1.record_run_start()
        s1.record_run_finish(rid, ok=True, message="test")
    finally:
        s1.close()

    db_path.write_bytes(b"not a sqlite db")

    s2 = CredentialStore(str(db_path))
    try:
        assert [b.credential_id for b in s2.list_enabled_bindings()] == ["cred-1"]
    finally:
        s2.close()

    quarantined = list(tmp_path.glob("atermes.db.corrupt-*"))
    assert quarantined, "expected quarantined corrupted db file to be created"


def test_restore_reports_what_came_back(tmp_path: Path, caplog) -> None:
    db_path = tmp_path / "atermes.db"
    with CredentialStore(str(db_path)) as s1:
        cid = s1.add_credential(email="one@atermes.nl", password="p", totp_seed="S", credential_id="cred-1")
        s1.add_environment(tenant="acme", credential_id=cid)
        s1.add_environment(tenant="beta", credential_id=cid)
        s1.record_run_finish(s1.record_run_start(), ok=True)

    db_path.write_bytes(b"not a sqlite db")

    with caplog.at_level(logging.WARNING, logger="atermes_token_sync.store"):
        with CredentialStore(str(db_path)) as s2:
            assert s2.get_credential("cred-1") is not None

    assert "holds passwords and TOTP seeds" in caplog.text
    assert "Restored 1 credentials and 2 environments" in caplog.text


def test_corrupted_db_without_snapshot_starts_empty(tmp_path: Path, caplog) -> None:
    db_path = tmp_path / "atermes.db"
    db_path.write_bytes(b"not a sqlite db")

    with caplog.at_level(logging.WARNING, logger="atermes_token_sync.store"):
        with CredentialStore(str(db_path)) as store:
            assert store.list_environments() == []

    assert "No credential DB snapshot" in caplog.text
    assert "re-add credentials and environments" in caplog.text
    assert len(list(tmp_path.glob("atermes.db.corrupt-*"))) == 1
