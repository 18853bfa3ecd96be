import os, pathlib, stat, tempfile
from enum import Enum
from typing import List, Optional

from .models import KdfCost, Vault
from .codec import PlainFormat, load_encrypted, load_plain, save_encrypted, save_plain
from .crypto import Passphrase
from .errors import FormatError

import structlog

LOG = structlog.get_logger()

NOFOLLOW_FLAG = getattr(os, "O_NOFOLLOW", 0)
DEFAULT_VAULT_NAME = "records.totp"


class VaultKind(str, Enum):
    JSON = "json"
    YAML = "yaml"
    ENCRYPTED = "totp"

    @property
    def plain_format(self) -> Optional[PlainFormat]:
        return {VaultKind.JSON: PlainFormat.JSON, VaultKind.YAML: PlainFormat.YAML}.get(self)


_EXTENSIONS = {
    ".json": VaultKind.JSON,
    ".yaml": VaultKind.YAML,
    ".yml": VaultKind.YAML,
    ".totp": VaultKind.ENCRYPTED,
}


def kind_for_path(path: pathlib.Path) -> VaultKind:
    """Pick the vault encoding from the file extension."""
    suffix = pathlib.Path(path).suffix.lower()
    try:
        return _EXTENSIONS[suffix]
    except KeyError:
        raise FormatError(
            f"unknown vault file extension '{suffix or '(none)'}'; use .json, .yaml, .yml or .totp"
        ) from None


def ensure_not_symlink(path: pathlib.Path, label: str):
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    if stat.S_ISLNK(st.st_mode):
        raise RuntimeError(f"{label} {path} is a symlink, which is not allowed")


def ensure_regular_file(path: pathlib.Path, label: str, allow_missing: bool = False):
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        if allow_missing:
            return
        raise
    if not stat.S_ISREG(st.st_mode):
        raise RuntimeError(f"{label} {path} is not a regular file")
    if st.st_nlink > 1:
        raise RuntimeError(f"{label} {path} has unexpected hard links")


def safe_read_bytes(path: pathlib.Path) -> bytes:
    """
    Atomically open and read a file while holding the descriptor, preventing TOCTOU.
    """
    ensure_regular_file(path, "Vault file")
    flags = os.O_RDONLY
    if NOFOLLOW_FLAG:
        flags |= NOFOLLOW_FLAG
    fd = os.open(path, flags)
    with os.fdopen(fd, "rb") as f:
        data = f.read()
    return data


def fsync_directory(path: pathlib.Path):
    """Flush a directory entry so a completed rename survives power loss (POSIX only)."""
    if os.name != "posix":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_secure_file(path, data: bytes):
    """
    Replace `path` with `data` atomically and with mode 0600.

    The bytes go to a temp file in the same directory, are fsynced, then
    renamed over the target, so readers see either the old or the new file.
    """
    path = pathlib.Path(path)
    ensure_not_symlink(path.parent, "Parent directory")
    ensure_not_symlink(path, "Target file")
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        os.chmod(path, 0o600)
        fsync_directory(path.parent)
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
    ensure_regular_file(path, "Target file")


def canonicalize_path(path: pathlib.Path) -> pathlib.Path:
    """Return an absolute, user-expanded version of the provided path."""
    p = pathlib.Path(path).expanduser()
    return p.absolute()


def audit_vault_file(path: pathlib.Path) -> List[str]:
    """Return human-readable problems with the vault file's type, owner and mode."""
    problems: List[str] = []
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return [f"{path} does not exist"]
    if stat.S_ISLNK(st.st_mode):
        return [f"{path} is a symlink"]
    if not stat.S_ISREG(st.st_mode):
        return [f"{path} is not a regular file"]
    if st.st_nlink > 1:
        problems.append(f"{path} has {st.st_nlink} hard links")
    if os.name == "posix":
        mode = stat.S_IMODE(st.st_mode)
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            problems.append(f"{path} permissions {oct(mode)} are too open. Fix with: chmod 600 {path}")
        if st.st_uid != os.getuid():
            problems.append(f"{path} is not owned by the current user")
    return problems


class VaultFile:
    """A vault on disk; the extension decides between JSON, YAML and encrypted."""

    def __init__(self, path: pathlib.Path):
        self.path = canonicalize_path(path)
        self.kind = kind_for_path(self.path)

    @property
    def encrypted(self) -> bool:
        return self.kind is VaultKind.ENCRYPTED

    def exists(self) -> bool:
        return os.path.lexists(self.path)

    def _require_passphrase(self, passphrase: Optional[Passphrase]) -> Passphrase:
        if passphrase is None:
            raise ValueError(f"{self.path} is encrypted and needs a passphrase")
        return passphrase

    def load(self, passphrase: Optional[Passphrase] = None) -> Vault:
        ensure_not_symlink(self.path, "Vault file")
        raw = safe_read_bytes(self.path)
        if self.encrypted:
            vault = load_encrypted(raw, self._require_passphrase(passphrase))
        else:
            vault = load_plain(raw, self.kind.plain_format)
        LOG.info("vault_loaded", path=str(self.path), kind=self.kind.value, records=len(vault))
        return vault

    def save(self, vault: Vault, passphrase: Optional[Passphrase] = None, cost: Optional[KdfCost] = None):
        if self.encrypted:
            data = save_encrypted(vault, self._require_passphrase(passphrase), cost)
        else:
            data = save_plain(vault, self.kind.plain_format)
        write_secure_file(self.path, data)
        LOG.info("vault_saved", path=str(self.path), kind=self.kind.value, records=len(vault))

    def create(self, passphrase: Optional[Passphrase] = None, cost: Optional[KdfCost] = None) -> Vault:
        """Write an empty vault; refuses to overwrite an existing file."""
        if self.exists():
            raise FileExistsError(f"{self.path} already exists")
        if not self.path.parent.is_dir():
            raise FileNotFoundError(f"directory {self.path.parent} does not exist")
        vault = Vault()
        self.save(vault, passphrase, cost)
        return vault
