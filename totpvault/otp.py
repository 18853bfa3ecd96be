"""
HMAC-based one-time passwords (RFC 4226) and their time-based form (RFC 6238).

Everything here is pure: the same record and timestamp always give the same code.
"""
from typing import Optional, Tuple
import hmac, struct, time

from .models import Algorithm, Record
from .errors import ValidationError

MAX_COUNTER = (1 << 64) - 1


def hotp(secret: bytes, counter: int, digits: int = 6, algorithm: Algorithm = Algorithm.SHA1) -> str:
    """Return the zero-padded HOTP code for `counter`."""
    if not 0 <= counter <= MAX_COUNTER:
        raise ValidationError("counter", "counter must fit in 8 unsigned bytes")
    mac = hmac.new(secret, struct.pack(">Q", counter), algorithm.digestmod).digest()

    # dynamic truncation
    offset = mac[-1] & 0x0F
    binary = struct.unpack(">I", mac[offset:offset + 4])[0] & 0x7FFFFFFF
    return str(binary % (10 ** digits)).zfill(digits)


def _check_timestamp(timestamp) -> int:
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        raise ValidationError("timestamp", "timestamp must be an integer number of seconds")
    if timestamp < 0:
        raise ValidationError("timestamp", "timestamp must not be negative")
    return timestamp


def generate_code(record: Record, timestamp: int) -> str:
    """Code for `record` at Unix time `timestamp` (seconds)."""
    counter = _check_timestamp(timestamp) // record.period
    return hotp(record.secret, counter, record.digits, record.algorithm)


def seconds_remaining(record: Record, timestamp: int) -> int:
    """Seconds until the code for `record` rotates."""
    return record.period - (_check_timestamp(timestamp) % record.period)


def current_code(record: Record, now: Optional[int] = None) -> Tuple[str, int]:
    if now is None:
        now = int(time.time())
    return generate_code(record, now), seconds_remaining(record, now)
