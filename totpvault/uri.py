"""
otpauth URI and hand-entered field parsing.

An otpauth URI looks like

    otpauth://totp/Issuer:account?secret=BASE32&issuer=Issuer&algorithm=SHA1&digits=6&period=30

Only `secret` is mandatory. When the label prefix and the `issuer` query
parameter disagree, the query parameter wins. An `account` query parameter
overrides the account part of the label; `to_uri` writes one only when the
label alone would not give back the stored account. Unknown query parameters are
ignored so vendor extensions do not break enrollment.
"""
from dataclasses import dataclass
from typing import Optional, Tuple, Union
from urllib.parse import parse_qsl, quote, unquote, urlencode, urlsplit
import structlog

from .models import Record, b32decode_secret, b32encode_secret
from .errors import InvalidSecretError, ParseError, UnsupportedTypeError

LOG = structlog.get_logger()

OTPAUTH_SCHEME = "otpauth"
DEFAULT_ALGORITHM = "SHA1"
DEFAULT_DIGITS = 6
DEFAULT_PERIOD = 30

_PARAM_NAMES = {"secret", "issuer", "account", "algorithm", "digits", "period"}
_PARAM_ALIASES = {"step": "period"}


@dataclass(frozen=True)
class OtpauthParams:
    """Recognized otpauth query parameters; missing ones keep the defaults."""
    secret: Optional[str] = None
    issuer: Optional[str] = None
    account: Optional[str] = None
    algorithm: str = DEFAULT_ALGORITHM
    digits: Union[int, str] = DEFAULT_DIGITS
    period: Union[int, str] = DEFAULT_PERIOD

    @classmethod
    def from_query(cls, query: str) -> "OtpauthParams":
        found = {}
        for key, value in parse_qsl(query, keep_blank_values=True):
            name = key.lower()
            name = _PARAM_ALIASES.get(name, name)
            if name not in _PARAM_NAMES:
                LOG.debug("otpauth_unknown_param", param=key)
                continue
            found.setdefault(name, value)
        return cls(**found)


@dataclass(frozen=True)
class ManualEntry:
    """Hand-entered record fields; defaults match Google Authenticator."""
    label: str
    secret: str                          # Base32 text
    issuer: str = ""
    account: str = ""
    algorithm: str = DEFAULT_ALGORITHM
    digits: int = DEFAULT_DIGITS
    period: int = DEFAULT_PERIOD


def decode_secret(text: str) -> bytes:
    try:
        return b32decode_secret(text)
    except ValueError:
        raise InvalidSecretError("secret is not valid Base32") from None


def split_label(label: str) -> Tuple[str, str]:
    """Split an `issuer:account` label; labels without a colon are all account."""
    if ":" in label:
        issuer, account = label.split(":", 1)
        return issuer.strip(), account.strip()
    return "", label.strip()


def parse_uri(uri: str, label: Optional[str] = None) -> Record:
    """Build a record from an otpauth://totp URI; `label` overrides the path label."""
    try:
        parts = urlsplit(uri.strip())
    except ValueError:
        raise ParseError("malformed otpauth URI") from None
    if parts.scheme.lower() != OTPAUTH_SCHEME:
        raise ParseError(f"unsupported URI scheme '{parts.scheme}', expected '{OTPAUTH_SCHEME}'")
    kind = parts.netloc.lower()
    if kind == "hotp":
        raise UnsupportedTypeError("hotp URIs are not supported, only time-based (totp) codes")
    if kind != "totp":
        raise ParseError(f"unknown otpauth type '{parts.netloc}'")

    raw_path = parts.path[1:] if parts.path.startswith("/") else parts.path
    try:
        path_label = unquote(raw_path, errors="strict")
    except UnicodeDecodeError:
        raise ParseError("otpauth label is not valid UTF-8") from None
    label_issuer, label_account = split_label(path_label)

    params = OtpauthParams.from_query(parts.query)
    if params.secret is None:
        raise ParseError("otpauth URI has no secret parameter")

    record = Record(
        label=path_label if label is None else label,
        issuer=params.issuer or label_issuer,
        account=label_account if params.account is None else params.account,
        secret=decode_secret(params.secret),
        algorithm=params.algorithm,
        digits=params.digits,
        period=params.period,
    )
    LOG.debug("otpauth_parsed", label=record.label, issuer=record.issuer)
    return record


def from_fields(entry: ManualEntry, label: Optional[str] = None) -> Record:
    return Record(
        label=entry.label if label is None else label,
        issuer=entry.issuer,
        account=entry.account,
        secret=decode_secret(entry.secret),
        algorithm=entry.algorithm,
        digits=entry.digits,
        period=entry.period,
    )


def parse(value: Union[str, ManualEntry], label: Optional[str] = None) -> Record:
    """Parse either an otpauth URI string or a `ManualEntry`."""
    if isinstance(value, ManualEntry):
        return from_fields(value, label)
    if isinstance(value, str):
        return parse_uri(value, label)
    raise ParseError(f"cannot build a record from {type(value).__name__}")


def to_uri(record: Record) -> str:
    """Canonical otpauth URI for `record`."""
    query = {"secret": b32encode_secret(record.secret)}
    if record.issuer:
        query["issuer"] = record.issuer
    if record.account != split_label(record.label)[1]:
        query["account"] = record.account
    query["algorithm"] = record.algorithm.value
    query["digits"] = str(record.digits)
    query["period"] = str(record.period)
    return f"{OTPAUTH_SCHEME}://totp/{quote(record.label, safe=':@')}?{urlencode(query, quote_via=quote)}"
