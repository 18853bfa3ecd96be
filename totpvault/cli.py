import typer, getpass, pathlib, json, time
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional
import structlog

from .storage import VaultFile, DEFAULT_VAULT_NAME, audit_vault_file
from .models import DEFAULT_KDF_COST, KdfCost, Record, Vault
from .codec import record_from_document
from .crypto import secret_buffer, zero_bytes
from .errors import TotpVaultError
from .otp import current_code
from .uri import DEFAULT_ALGORITHM, DEFAULT_DIGITS, DEFAULT_PERIOD, ManualEntry, decode_secret, parse
from .logging import get_logger

app = typer.Typer(no_args_is_help=True)
LOG = structlog.get_logger()


def _file_option():
    return typer.Option(
        pathlib.Path(DEFAULT_VAULT_NAME),
        "--file",
        "-f",
        envvar="TOTPVAULT_FILE",
        help="Vault file (.totp encrypted, .json or .yaml plaintext)",
    )


def _fail(event: str, message: str, **details):
    LOG.error(event, message=message, **details)
    typer.echo(f"✖ {message}", err=True)
    raise typer.Exit(1)


@contextmanager
def errors_reported(event: str, **details):
    """Turn core and file-system failures into a logged `✖` line and exit status 1."""
    try:
        yield
    except (TotpVaultError, OSError, RuntimeError, ValueError) as exc:
        _fail(event, str(exc), **details)


def ask_pw(prompt="Vault passphrase: ") -> bytearray:
    """Prompt for the passphrase without echo and return it in a wipeable buffer."""
    return secret_buffer(getpass.getpass(prompt))


def ask_new_password() -> bytearray:
    """Prompt twice for a new passphrase and ensure the entries match."""
    first = ask_pw("New vault passphrase: ")
    second = ask_pw("Confirm vault passphrase: ")
    try:
        if first != second:
            zero_bytes(first)
            typer.echo("✖ Passphrases did not match. Aborting.", err=True)
            raise typer.Exit(1)
        if not first:
            typer.echo("✖ Passphrase must not be empty.", err=True)
            raise typer.Exit(1)
    finally:
        zero_bytes(second)
    return first


class Session:
    """A loaded vault plus what is needed to write it back."""

    def __init__(self, vault_file: VaultFile, vault: Vault, passphrase: Optional[bytearray]):
        self.file = vault_file
        self.vault = vault
        self.passphrase = passphrase

    def save(self):
        self.file.save(self.vault, self.passphrase)


@contextmanager
def open_vault(path: pathlib.Path) -> Iterator[Session]:
    """Load the vault at `path`; the passphrase buffer is wiped when the block exits."""
    vault_file = VaultFile(path)
    if not vault_file.exists():
        raise FileNotFoundError(f"vault file {vault_file.path} does not exist; create it with `totpvault new`")
    passphrase = ask_pw() if vault_file.encrypted else None
    try:
        yield Session(vault_file, vault_file.load(passphrase), passphrase)
    finally:
        if passphrase is not None:
            zero_bytes(passphrase)


def _print_record(record: Record):
    typer.echo(record.label)
    if record.issuer:
        typer.echo(f"     issuer: {record.issuer}")
    if record.account:
        typer.echo(f"    account: {record.account}")
    typer.echo(f"  algorithm: {record.algorithm.value}")
    typer.echo(f"     digits: {record.digits}")
    typer.echo(f"     period: {record.period}s")


def _print_codes(records: Iterable[Record], now: int):
    records = list(records)
    width = max((len(r.label) for r in records), default=0)
    for record in records:
        code, left = current_code(record, now)
        typer.echo(f"{record.label.ljust(width)}  {code}  {left:>2}s")


@app.callback()
def main(debug: bool = typer.Option(False, "--debug", help="Log to stderr instead of the log file")):
    """Local TOTP vault: store secrets, generate codes."""
    get_logger(debug)


@app.command()
def new(
    file: pathlib.Path = _file_option(),
    time_cost: int = typer.Option(DEFAULT_KDF_COST.time_cost, "--time-cost", help="Argon2id passes (encrypted vaults)"),
    memory_cost: int = typer.Option(DEFAULT_KDF_COST.memory_cost, "--memory-cost", help="Argon2id memory in KiB (encrypted vaults)"),
    parallelism: int = typer.Option(DEFAULT_KDF_COST.parallelism, "--parallelism", help="Argon2id lanes (encrypted vaults)"),
):
    """Create an empty vault file."""
    with errors_reported("vault_create_failed", vault=str(file)):
        vault_file = VaultFile(file)
        cost = KdfCost(time_cost=time_cost, memory_cost=memory_cost, parallelism=parallelism) if vault_file.encrypted else None
    passphrase = ask_new_password() if vault_file.encrypted else None
    try:
        with errors_reported("vault_create_failed", vault=str(vault_file.path)):
            vault_file.create(passphrase, cost)
    finally:
        if passphrase is not None:
            zero_bytes(passphrase)
    typer.echo(f"✔ Created {vault_file.path}")


@app.command()
def add(
    name: str = typer.Option(..., "--name", "-n", help="Label of the new record"),
    secret: Optional[str] = typer.Option(None, "--secret", "-s", help="Base32 secret (prompted without echo when omitted)"),
    issuer: str = typer.Option("", "--issuer", "-i"),
    account: str = typer.Option("", "--account", "-u", help="Account or user name"),
    algorithm: str = typer.Option(DEFAULT_ALGORITHM, "--algorithm", "-a", help="SHA1, SHA256 or SHA512"),
    digits: int = typer.Option(DEFAULT_DIGITS, "--digits", "-d"),
    period: int = typer.Option(DEFAULT_PERIOD, "--period", "-t", help="Seconds per code"),
    file: pathlib.Path = _file_option(),
):
    """Add a record from hand-entered fields; defaults match Google Authenticator."""
    if secret is None:
        secret = getpass.getpass("Base32 secret: ")
    entry = ManualEntry(
        label=name, secret=secret, issuer=issuer, account=account,
        algorithm=algorithm, digits=digits, period=period,
    )
    with errors_reported("add_failed", name=name, vault=str(file)):
        record = parse(entry)
        with open_vault(file) as session:
            session.vault.add(record)
            session.save()
    typer.echo(f"✔ Added {record.label}")
    _print_record(record)


@app.command("add-url")
def add_url(
    url: str = typer.Option(..., "--url", help="otpauth://totp/... URI"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Label to use instead of the URI label"),
    view_only: bool = typer.Option(False, "--view-only", "-v", help="Show the parsed record without saving it"),
    file: pathlib.Path = _file_option(),
):
    """Add a record from an otpauth URI."""
    with errors_reported("add_url_failed", name=name, vault=str(file)):
        record = parse(url, label=name)
        if not view_only:
            with open_vault(file) as session:
                session.vault.add(record)
                session.save()
    if not view_only:
        typer.echo(f"✔ Added {record.label}")
    _print_record(record)


@app.command("add-json")
def add_json(
    name: str = typer.Option(..., "--name", "-n", help="Label of the new record"),
    json_text: str = typer.Option(..., "--json", help='Record object, e.g. {"secret": "JBSWY3DPEHPK3PXP", "digits": 6}'),
    view_only: bool = typer.Option(False, "--view-only", "-v", help="Show the parsed record without saving it"),
    file: pathlib.Path = _file_option(),
):
    """Add a record from a JSON object in the vault file schema."""
    with errors_reported("add_json_failed", name=name, vault=str(file)):
        try:
            document = json.loads(json_text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON: {exc.msg}") from None
        record = record_from_document(name, document)
        if not view_only:
            with open_vault(file) as session:
                session.vault.add(record)
                session.save()
    if not view_only:
        typer.echo(f"✔ Added {record.label}")
    _print_record(record)


@app.command()
def edit(
    name: str = typer.Option(..., "--name", "-n", help="Label of the record to change"),
    secret: Optional[str] = typer.Option(None, "--secret", "-s", help="New Base32 secret"),
    issuer: Optional[str] = typer.Option(None, "--issuer", "-i"),
    account: Optional[str] = typer.Option(None, "--account", "-u"),
    algorithm: Optional[str] = typer.Option(None, "--algorithm", "-a"),
    digits: Optional[int] = typer.Option(None, "--digits", "-d"),
    period: Optional[int] = typer.Option(None, "--period", "-t"),
    file: pathlib.Path = _file_option(),
):
    """Change fields of an existing record; the result is re-validated."""
    changes = {
        key: value
        for key, value in dict(issuer=issuer, account=account, algorithm=algorithm, digits=digits, period=period).items()
        if value is not None
    }
    with errors_reported("edit_failed", name=name, vault=str(file)):
        if secret is not None:
            changes["secret"] = decode_secret(secret)
        if not changes:
            raise ValueError("nothing to change; pass at least one field option")
        with open_vault(file) as session:
            record = session.vault.edit(name, **changes)
            session.save()
    typer.echo(f"✔ Updated {record.label}")
    _print_record(record)


@app.command()
def rename(
    original: str = typer.Option(..., "--original", help="Current label"),
    renamed: str = typer.Option(..., "--renamed", help="New label"),
    file: pathlib.Path = _file_option(),
):
    """Give a record a new label."""
    with errors_reported("rename_failed", name=original, renamed=renamed, vault=str(file)):
        with open_vault(file) as session:
            session.vault.rename(original, renamed)
            session.save()
    typer.echo(f"✔ Renamed {original} -> {renamed}")


@app.command()
def drop(
    name: str = typer.Option(..., "--name", "-n", help="Label of the record to remove"),
    file: pathlib.Path = _file_option(),
):
    """Remove a record."""
    with errors_reported("drop_failed", name=name, vault=str(file)):
        with open_vault(file) as session:
            session.vault.remove(name)
            session.save()
    typer.echo(f"✔ Removed {name}")


@app.command()
def view(
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Only show this record"),
    file: pathlib.Path = _file_option(),
):
    """Show record settings (secrets are never printed)."""
    with errors_reported("view_failed", name=name, vault=str(file)):
        with open_vault(file) as session:
            records = [session.vault.get(name)] if name is not None else session.vault.records()
    if not records:
        typer.echo("Vault is empty.")
    for idx, record in enumerate(records):
        if idx:
            typer.echo("")
        _print_record(record)


@app.command()
def codes(
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Only show this record"),
    watch: bool = typer.Option(False, "--watch", "-w", help="Refresh every second until interrupted"),
    file: pathlib.Path = _file_option(),
):
    """Print current codes and the seconds left before they rotate."""
    with errors_reported("codes_failed", name=name, vault=str(file)):
        with open_vault(file) as session:
            records = [session.vault.get(name)] if name is not None else session.vault.records()
    if not records:
        typer.echo("Vault is empty.")
        return
    if not watch:
        _print_codes(records, int(time.time()))
        return
    try:
        while True:
            typer.echo("\x1b[2J\x1b[1;1H", nl=False)
            _print_codes(records, int(time.time()))
            time.sleep(1 - (time.time() % 1))
    except KeyboardInterrupt:
        typer.echo("")


@app.command()
def check(file: pathlib.Path = _file_option()):
    """Audit the vault file's permissions and make sure it decodes."""
    with errors_reported("check_failed", vault=str(file)):
        vault_file = VaultFile(file)
    problems = audit_vault_file(vault_file.path)
    for problem in problems:
        typer.echo(f"✖ {problem}")
    if not vault_file.exists():
        raise typer.Exit(1)
    with errors_reported("check_failed", vault=str(vault_file.path)):
        with open_vault(vault_file.path) as session:
            count = len(session.vault)
    typer.echo(f"✔ {vault_file.path} decodes ({count} records)")
    if problems:
        raise typer.Exit(1)
    typer.echo("✔ Vault passed all checks")


if __name__ == "__main__":
    app()
