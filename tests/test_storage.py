import os
import stat

import pytest

from totpvault.errors import AuthenticationError, FormatError
from totpvault.models import Vault
from totpvault.storage import (
    VaultFile,
    VaultKind,
    audit_vault_file,
    kind_for_path,
    write_secure_file,
)


@pytest.mark.parametrize(
    "name,kind",
    [
        ("records.totp", VaultKind.ENCRYPTED),
        ("records.json", VaultKind.JSON),
        ("records.YAML", VaultKind.YAML),
        ("records.yml", VaultKind.YAML),
    ],
)
def test_kind_from_extension(tmp_path, name, kind):
    assert kind_for_path(tmp_path / name) is kind


@pytest.mark.parametrize("name", ["records.txt", "records"])
def test_unknown_extension(tmp_path, name):
    with pytest.raises(FormatError):
        VaultFile(tmp_path / name)


def test_write_secure_file_replaces_atomically(tmp_path):
    target = tmp_path / "records.json"
    write_secure_file(target, b"first")
    write_secure_file(target, b"second")
    assert target.read_bytes() == b"second"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["records.json"]
    if os.name == "posix":
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o600


def test_failed_write_keeps_previous_file(tmp_path, monkeypatch):
    target = tmp_path / "records.json"
    write_secure_file(target, b"original")

    def boom(src, dst):
        raise OSError("disk on fire")

    monkeypatch.setattr(os, "replace", boom)
    with pytest.raises(OSError):
        write_secure_file(target, b"replacement")
    assert target.read_bytes() == b"original"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["records.json"]


@pytest.mark.skipif(os.name != "posix", reason="symlinks")
def test_refuses_symlink_target(tmp_path):
    real = tmp_path / "real.json"
    real.write_text("{}")
    link = tmp_path / "link.json"
    link.symlink_to(real)
    with pytest.raises(RuntimeError):
        write_secure_file(link, b"{}")
    with pytest.raises(RuntimeError):
        VaultFile(link).load()


@pytest.mark.parametrize("name", ["records.json", "records.yaml"])
def test_plain_lifecycle(tmp_path, records, name):
    vault_file = VaultFile(tmp_path / name)
    assert not vault_file.exists()
    assert vault_file.create() == Vault()
    assert vault_file.load() == Vault()

    vault = vault_file.load()
    for record in records:
        vault.add(record)
    vault_file.save(vault)
    assert vault_file.load() == Vault(records)


def test_encrypted_lifecycle(tmp_path, records, fast_cost):
    vault_file = VaultFile(tmp_path / "records.totp")
    vault_file.create("pw", fast_cost)

    vault = vault_file.load("pw")
    assert vault.header.kdf_params.cost() == fast_cost
    vault.add(records[0])
    vault_file.save(vault, "pw")

    assert vault_file.load(bytearray(b"pw")) == Vault(records[:1])
    with pytest.raises(AuthenticationError):
        vault_file.load("wrong")


def test_encrypted_needs_passphrase(tmp_path):
    with pytest.raises(ValueError):
        VaultFile(tmp_path / "records.totp").create()


def test_create_refuses_existing(tmp_path):
    vault_file = VaultFile(tmp_path / "records.json")
    vault_file.create()
    with pytest.raises(FileExistsError):
        vault_file.create()


def test_create_needs_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        VaultFile(tmp_path / "missing" / "records.json").create()


@pytest.mark.skipif(os.name != "posix", reason="unix permissions")
def test_audit(tmp_path):
    target = tmp_path / "records.json"
    assert audit_vault_file(target) == [f"{target} does not exist"]
    write_secure_file(target, b"{}")
    assert audit_vault_file(target) == []
    os.chmod(target, 0o644)
    problems = audit_vault_file(target)
    assert len(problems) == 1
    assert "too open" in problems[0]


@pytest.mark.skipif(os.name != "posix", reason="directory fsync")
def test_write_secure_file_syncs_parent_directory(tmp_path, monkeypatch):
    synced = []
    real_fsync = os.fsync

    def recording_fsync(fd):
        synced.append(stat.S_ISDIR(os.fstat(fd).st_mode))
        real_fsync(fd)

    monkeypatch.setattr(os, "fsync", recording_fsync)
    write_secure_file(tmp_path / "records.json", b"{}")
    assert synced == [False, True]
