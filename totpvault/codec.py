"""
Serialization of a `Vault` to plaintext JSON/YAML and to the encrypted container.

Plaintext schema (JSON shown, YAML is the same tree):

    {
      "Example:alice@example.com": {
        "issuer": "Example",
        "account": "alice@example.com",
        "secret": "JBSWY3DPEHPK3PXP",
        "algorithm": "SHA1",
        "digits": 6,
        "period": 30
      }
    }

The encrypted container is compact JSON holding an `EncryptionHeader` and the
XChaCha20-Poly1305 output over the plaintext JSON document. The header is
bound to the ciphertext as associated data.
"""
from enum import Enum
from typing import Any, List, Optional, Tuple, Union
import base64, json
import structlog
import yaml

from .models import (
    DEFAULT_KDF_COST,
    EncryptedContainer,
    EncryptionHeader,
    KdfCost,
    KdfParams,
    Record,
    Vault,
)
from .crypto import Passphrase, aead_decrypt, aead_encrypt, derived_key, gen_nonce, gen_salt
from .errors import AuthenticationError, DuplicateLabelError, FormatError, ValidationError

LOG = structlog.get_logger()

AD_CONTEXT = b"totpvault-container-v1:"


def b64e(b: bytes) -> str: return base64.b64encode(b).decode("ascii")


class PlainFormat(str, Enum):
    JSON = "json"
    YAML = "yaml"


def _unique_pairs(pairs):
    doc = {}
    for key, value in pairs:
        if key in doc:
            raise FormatError(f"duplicate key '{key}'")
        doc[key] = value
    return doc


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects repeated mapping keys instead of keeping the last one.

    Merge keys (`<<`) are expanded first, so a merged field that collides with
    an explicit one is a duplicate too.
    """

    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            self.flatten_mapping(node)
            seen = set()
            for key_node, _ in node.value:
                key = self.construct_object(key_node, deep=deep)
                try:
                    if key in seen:
                        raise FormatError(f"duplicate key '{key}'")
                    seen.add(key)
                except TypeError:
                    continue  # unhashable key, SafeLoader reports it
        return super().construct_mapping(node, deep=deep)


def _decode_document(data: Union[bytes, str], fmt: PlainFormat) -> Any:
    if isinstance(data, (bytes, bytearray)):
        try:
            text = bytes(data).decode("utf-8")
        except UnicodeDecodeError:
            raise FormatError("vault file is not valid UTF-8") from None
    else:
        text = data

    if fmt is PlainFormat.JSON:
        try:
            return json.loads(text, object_pairs_hook=_unique_pairs)
        except json.JSONDecodeError as exc:
            raise FormatError(f"invalid JSON: {exc.msg} (line {exc.lineno})") from None

    try:
        return yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as exc:
        # str(exc) quotes the offending source line, which may hold a secret
        problem = getattr(exc, "problem", None) or "unreadable document"
        mark = getattr(exc, "problem_mark", None)
        where = f" (line {mark.line + 1})" if mark is not None else ""
        raise FormatError(f"invalid YAML: {problem}{where}") from None


def record_from_document(label: Any, document: Any) -> Record:
    """Build one record from its schema entry, mapping validation failures to FormatError."""
    if not isinstance(label, str):
        raise FormatError("record labels must be strings", field="label")
    if not isinstance(document, dict):
        raise FormatError("record entry must be a mapping", label=label)
    if any(not isinstance(key, str) for key in document):
        raise FormatError("field names must be strings", label=label)
    fields = dict(document)
    embedded = fields.pop("label", label)
    if embedded != label:
        raise FormatError("embedded label does not match its key", label=label, field="label")
    try:
        return Record(label=label, **fields)
    except ValidationError as exc:
        raise FormatError(exc.message, label=label, field=exc.field) from None


def _entries(doc: Any) -> List[Tuple[Any, Any]]:
    if doc is None:
        return []
    if isinstance(doc, dict):
        return list(doc.items())
    if isinstance(doc, list):
        entries = []
        for item in doc:
            if not isinstance(item, dict) or "label" not in item:
                raise FormatError("list entries must be mappings carrying a label", field="label")
            entries.append((item["label"], item))
        return entries
    raise FormatError("top-level value must be a mapping or list of records")


def load_plain(data: Union[bytes, str], fmt: Union[PlainFormat, str]) -> Vault:
    """Parse a plaintext vault document."""
    fmt = PlainFormat(fmt)
    vault = Vault()
    for label, document in _entries(_decode_document(data, fmt)):
        record = record_from_document(label, document)
        try:
            vault.add(record)
        except DuplicateLabelError:
            raise FormatError("duplicate label", label=label, field="label") from None
    return vault


def save_plain(vault: Vault, fmt: Union[PlainFormat, str]) -> bytes:
    fmt = PlainFormat(fmt)
    doc = {record.label: record.to_document() for record in vault}
    if fmt is PlainFormat.JSON:
        return (json.dumps(doc, indent=2, ensure_ascii=False) + "\n").encode("utf-8")
    return yaml.safe_dump(doc, sort_keys=False, allow_unicode=True, default_flow_style=False).encode("utf-8")


def _associated_data(header: EncryptionHeader) -> bytes:
    return AD_CONTEXT + header.model_dump_json().encode("utf-8")


def save_encrypted(vault: Vault, passphrase: Passphrase, cost: Optional[KdfCost] = None) -> bytes:
    """
    Encrypt `vault` under a key derived from `passphrase`.

    Salt and nonce are fresh on every call. Without an explicit `cost` the
    cost stored in the vault's header (if it was loaded from a container) is
    kept, otherwise `DEFAULT_KDF_COST` is used.
    """
    if cost is None:
        cost = vault.header.kdf_params.cost() if vault.header is not None else DEFAULT_KDF_COST
    salt = gen_salt()
    nonce = gen_nonce()
    header = EncryptionHeader(
        kdf_params=KdfParams(
            time_cost=cost.time_cost,
            memory_cost=cost.memory_cost,
            parallelism=cost.parallelism,
            salt_b64=b64e(salt),
        ),
        nonce_b64=b64e(nonce),
    )
    plaintext = save_plain(vault, PlainFormat.JSON)
    with derived_key(passphrase, salt, cost.time_cost, cost.memory_cost, cost.parallelism) as key:
        ciphertext = aead_encrypt(key, nonce, plaintext, _associated_data(header))
    container = EncryptedContainer(header=header, ciphertext_b64=b64e(ciphertext))
    LOG.debug(
        "vault_encrypted",
        records=len(vault),
        time_cost=cost.time_cost,
        memory_cost=cost.memory_cost,
        parallelism=cost.parallelism,
    )
    return container.model_dump_json().encode("utf-8")


def load_encrypted(data: bytes, passphrase: Passphrase) -> Vault:
    """
    Decrypt a container written by `save_encrypted`.

    Any failure to parse or authenticate raises the same AuthenticationError,
    so a wrong passphrase cannot be told apart from a damaged file.
    """
    raw = bytes(data)
    try:
        container = EncryptedContainer.model_validate_json(raw)
    except ValueError:
        raise AuthenticationError() from None
    if container.model_dump_json().encode("utf-8") != raw:
        raise AuthenticationError()

    header = container.header
    params = header.kdf_params
    with derived_key(passphrase, params.salt, params.time_cost, params.memory_cost, params.parallelism) as key:
        try:
            plaintext = aead_decrypt(key, header.nonce, container.ciphertext, _associated_data(header))
        except ValueError:
            raise AuthenticationError() from None

    vault = load_plain(plaintext, PlainFormat.JSON)
    vault.header = header
    LOG.debug("vault_decrypted", records=len(vault))
    return vault
