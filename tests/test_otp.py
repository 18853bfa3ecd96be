import pytest

from totpvault.errors import ValidationError
from totpvault.models import Record
from totpvault.otp import current_code, generate_code, hotp, seconds_remaining

from conftest import RFC_SEED_SHA1, RFC_SEED_SHA256, RFC_SEED_SHA512

SEEDS = {"SHA1": RFC_SEED_SHA1, "SHA256": RFC_SEED_SHA256, "SHA512": RFC_SEED_SHA512}

# RFC 6238 appendix B
RFC6238_VECTORS = [
    (59, "SHA1", "94287082"),
    (59, "SHA256", "46119246"),
    (59, "SHA512", "90693936"),
    (1111111109, "SHA1", "07081804"),
    (1111111109, "SHA256", "68084774"),
    (1111111109, "SHA512", "25091201"),
    (1111111111, "SHA1", "14050471"),
    (1111111111, "SHA256", "67062674"),
    (1111111111, "SHA512", "99943326"),
    (1234567890, "SHA1", "89005924"),
    (1234567890, "SHA256", "91819424"),
    (1234567890, "SHA512", "93441116"),
    (2000000000, "SHA1", "69279037"),
    (2000000000, "SHA256", "90698825"),
    (2000000000, "SHA512", "38618901"),
    (20000000000, "SHA1", "65353130"),
    (20000000000, "SHA256", "77737706"),
    (20000000000, "SHA512", "47863826"),
]

# RFC 4226 appendix D
RFC4226_CODES = ["755224", "287082", "359152", "969429", "338314", "254676", "287922", "162583", "399871", "520489"]


@pytest.mark.parametrize("timestamp,algorithm,expected", RFC6238_VECTORS)
def test_rfc6238_eight_digits(timestamp, algorithm, expected):
    record = Record(label="rfc", secret=SEEDS[algorithm], algorithm=algorithm, digits=8)
    assert generate_code(record, timestamp) == expected


@pytest.mark.parametrize("timestamp,algorithm,expected", RFC6238_VECTORS)
def test_rfc6238_six_digits_is_suffix(timestamp, algorithm, expected):
    record = Record(label="rfc", secret=SEEDS[algorithm], algorithm=algorithm, digits=6)
    assert generate_code(record, timestamp) == expected[-6:]


@pytest.mark.parametrize("counter,expected", list(enumerate(RFC4226_CODES)))
def test_rfc4226_hotp(counter, expected):
    assert hotp(RFC_SEED_SHA1, counter) == expected


def test_ten_digit_codes_are_zero_padded():
    record = Record(label="rfc", secret=RFC_SEED_SHA1, digits=10)
    code = generate_code(record, 59)
    assert len(code) == 10
    # a 31-bit value never exceeds 10 digits, so the 8-digit vector is its suffix
    assert code.endswith("94287082")


def test_code_constant_within_window_and_changes_at_boundary():
    record = Record(label="rfc", secret=RFC_SEED_SHA1, digits=8)
    window = [generate_code(record, t) for t in range(30, 60)]
    assert set(window) == {"94287082"}
    assert generate_code(record, 60) != "94287082"
    assert generate_code(record, 29) != "94287082"


def test_period_is_per_record():
    fast = Record(label="a", secret=RFC_SEED_SHA1, digits=8, period=30)
    slow = Record(label="b", secret=RFC_SEED_SHA1, digits=8, period=60)
    # counter 1 for both
    assert generate_code(fast, 59) == generate_code(slow, 119) == "94287082"


def test_seconds_remaining():
    record = Record(label="rfc", secret=RFC_SEED_SHA1)
    assert seconds_remaining(record, 0) == 30
    assert seconds_remaining(record, 59) == 1
    assert seconds_remaining(record, 60) == 30
    assert seconds_remaining(record.replace(period=45), 50) == 40


@pytest.mark.parametrize("timestamp", [-1, 1.5, "59", True, None])
def test_invalid_timestamps_rejected(timestamp):
    record = Record(label="rfc", secret=RFC_SEED_SHA1)
    with pytest.raises(ValidationError) as excinfo:
        generate_code(record, timestamp)
    assert excinfo.value.field == "timestamp"


def test_current_code_uses_given_time():
    record = Record(label="rfc", secret=RFC_SEED_SHA1, digits=8)
    assert current_code(record, 59) == ("94287082", 1)
    code, left = current_code(record)
    assert len(code) == 8
    assert 1 <= left <= 30
