from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_serializer,
    field_validator,
    model_validator,
)
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Literal, Optional
import base64, binascii, hashlib

from .crypto import NONCE_SIZE, TAG_SIZE
from .errors import ValidationError, DuplicateLabelError, NotFoundError

MIN_DIGITS = 6
MAX_DIGITS = 10
MIN_SALT_SIZE = 16
MAX_MEMORY_COST = 2 * 1024 * 1024  # KiB (2 GiB)

# legacy keys written by older record files
_FIELD_ALIASES = {"algo": "algorithm", "step": "period", "username": "account"}


class Algorithm(str, Enum):
    """HMAC digest used to derive codes."""
    SHA1 = "SHA1"
    SHA256 = "SHA256"
    SHA512 = "SHA512"

    @property
    def digestmod(self):
        return getattr(hashlib, self.value.lower())


def b32decode_secret(text: str) -> bytes:
    """Decode Base32 text, ignoring case, whitespace and missing padding."""
    cleaned = "".join(text.split()).rstrip("=").upper()
    try:
        return base64.b32decode(cleaned + "=" * (-len(cleaned) % 8))
    except (binascii.Error, ValueError) as exc:
        raise ValueError("secret is not valid Base32") from exc


def b32encode_secret(secret: bytes) -> str:
    return base64.b32encode(secret).decode("ascii").rstrip("=")


def _b64_field(value: str, what: str, min_len: int = 0, exact_len: Optional[int] = None) -> bytes:
    try:
        raw = base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError(f"{what} is not valid base64") from exc
    if base64.b64encode(raw).decode("ascii") != value:
        raise ValueError(f"{what} is not canonical base64")
    if exact_len is not None and len(raw) != exact_len:
        raise ValueError(f"{what} must be {exact_len} bytes")
    if len(raw) < min_len:
        raise ValueError(f"{what} is too short ({len(raw)} < {min_len})")
    return raw


def _to_validation_error(exc: PydanticValidationError, default_field: str = "record") -> ValidationError:
    # only loc/msg are used: pydantic's own message embeds the raw input
    err = exc.errors()[0]
    loc = err.get("loc") or (default_field,)
    field = _FIELD_ALIASES.get(str(loc[0]), str(loc[0]))
    msg = err.get("msg", "invalid value")
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    return ValidationError(field, msg)


class Record(BaseModel):
    """
    One enrolled TOTP credential.

    Construction validates every invariant and raises `errors.ValidationError`
    naming the offending field. Records are frozen; use `replace` to edit.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    label: str
    issuer: str = ""
    account: str = Field("", validation_alias=AliasChoices("account", "username"))
    secret: bytes = Field(repr=False)
    algorithm: Algorithm = Field(Algorithm.SHA1, validation_alias=AliasChoices("algorithm", "algo"))
    digits: int = 6
    period: int = Field(30, validation_alias=AliasChoices("period", "step"))

    def __init__(self, **data):
        try:
            super().__init__(**data)
        except PydanticValidationError as exc:
            raise _to_validation_error(exc) from None

    @field_validator("label")
    @classmethod
    def validate_label(cls, v: str):
        if not v.strip():
            raise ValueError("label must not be empty")
        return v

    @field_validator("issuer", "account", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        return "" if v is None else v

    @field_validator("secret", mode="before")
    @classmethod
    def decode_secret(cls, v):
        """Accept Base32 text, raw bytes, or a list of byte values (older files)."""
        if isinstance(v, str):
            return b32decode_secret(v)
        if isinstance(v, (list, tuple)):
            try:
                return bytes(v)
            except (TypeError, ValueError) as exc:
                raise ValueError("secret byte list must hold integers 0-255") from exc
        if isinstance(v, (bytearray, memoryview)):
            return bytes(v)
        return v

    @field_validator("secret")
    @classmethod
    def validate_secret(cls, v: bytes):
        if not v:
            raise ValueError("secret must not be empty")
        return v

    @field_validator("algorithm", mode="before")
    @classmethod
    def normalize_algorithm(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("digits")
    @classmethod
    def validate_digits(cls, v: int):
        if not MIN_DIGITS <= v <= MAX_DIGITS:
            raise ValueError(f"digits must be between {MIN_DIGITS} and {MAX_DIGITS}")
        return v

    @field_validator("period")
    @classmethod
    def validate_period(cls, v: int):
        if v <= 0:
            raise ValueError("period must be greater than 0")
        return v

    @field_serializer("secret")
    def serialize_secret(self, secret: bytes) -> str:
        return b32encode_secret(secret)

    def replace(self, **changes) -> "Record":
        """Return a re-validated copy with `changes` applied."""
        fields = {name: getattr(self, name) for name in type(self).model_fields}
        fields.update(changes)
        return type(self)(**fields)

    def to_document(self) -> dict:
        """Field mapping written to plaintext vault files (label excluded)."""
        return self.model_dump(mode="json", exclude={"label"})


class KdfCost(BaseModel):
    """Argon2id cost parameters; memory_cost is in KiB."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    time_cost: int = Field(ge=1, le=64)
    memory_cost: int = Field(le=MAX_MEMORY_COST)
    parallelism: int = Field(ge=1, le=16)

    def __init__(self, **data):
        try:
            super().__init__(**data)
        except PydanticValidationError as exc:
            raise _to_validation_error(exc, default_field="memory_cost") from None

    @model_validator(mode="after")
    def validate_memory(self):
        if self.memory_cost < 8 * self.parallelism:
            raise ValueError("memory_cost must be at least 8 KiB per lane")
        return self


DEFAULT_KDF_COST = KdfCost(time_cost=3, memory_cost=256 * 1024, parallelism=2)


class KdfParams(KdfCost):
    """Cost parameters plus the per-file salt."""
    salt_b64: str

    @field_validator("salt_b64")
    @classmethod
    def validate_salt(cls, v: str):
        _b64_field(v, "salt", min_len=MIN_SALT_SIZE)
        return v

    @property
    def salt(self) -> bytes:
        return base64.b64decode(self.salt_b64)

    def cost(self) -> KdfCost:
        return KdfCost(time_cost=self.time_cost, memory_cost=self.memory_cost, parallelism=self.parallelism)


class EncryptionHeader(BaseModel):
    """Plaintext metadata stored in front of an encrypted vault; holds no secrets."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    kdf: Literal["argon2id"] = "argon2id"
    kdf_params: KdfParams
    cipher: Literal["xchacha20poly1305"] = "xchacha20poly1305"
    nonce_b64: str

    @field_validator("nonce_b64")
    @classmethod
    def validate_nonce(cls, v: str):
        _b64_field(v, "nonce", exact_len=NONCE_SIZE)
        return v

    @property
    def nonce(self) -> bytes:
        return base64.b64decode(self.nonce_b64)


class EncryptedContainer(BaseModel):
    """On-disk layout of an encrypted vault file."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    version: Literal[1] = 1
    header: EncryptionHeader
    ciphertext_b64: str                  # AEAD output, tag included

    @field_validator("ciphertext_b64")
    @classmethod
    def validate_ciphertext(cls, v: str):
        _b64_field(v, "ciphertext", min_len=TAG_SIZE)
        return v

    @property
    def ciphertext(self) -> bytes:
        return base64.b64decode(self.ciphertext_b64)


class Vault:
    """
    Ordered collection of records keyed by label.

    `header` is set only when the vault was read from an encrypted container;
    it is transport metadata and takes no part in equality.
    """

    def __init__(self, records: Iterable[Record] = (), header: Optional[EncryptionHeader] = None):
        self._records: Dict[str, Record] = {}
        self.header = header
        for record in records:
            self.add(record)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[Record]:
        return iter(list(self._records.values()))

    def __contains__(self, label) -> bool:
        return label in self._records

    def __eq__(self, other):
        if not isinstance(other, Vault):
            return NotImplemented
        return list(self._records.items()) == list(other._records.items())

    __hash__ = None

    def __repr__(self) -> str:
        return f"Vault(labels={self.labels()!r})"

    def labels(self) -> List[str]:
        return list(self._records)

    def records(self) -> List[Record]:
        return list(self._records.values())

    def get(self, label: str) -> Record:
        try:
            return self._records[label]
        except KeyError:
            raise NotFoundError(label) from None

    def add(self, record: Record) -> Record:
        if record.label in self._records:
            raise DuplicateLabelError(record.label)
        self._records[record.label] = record
        return record

    def edit(self, label: str, **changes) -> Record:
        """Replace the record under `label` with a re-validated copy, keeping its position."""
        current = self.get(label)
        updated = current.replace(**changes)
        if updated.label != label and updated.label in self._records:
            raise DuplicateLabelError(updated.label)
        self._records = {
            (updated.label if key == label else key): (updated if key == label else rec)
            for key, rec in self._records.items()
        }
        return updated

    def rename(self, old: str, new: str) -> Record:
        return self.edit(old, label=new)

    def remove(self, label: str) -> Record:
        record = self.get(label)
        del self._records[label]
        return record
