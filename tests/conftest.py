import pytest
import structlog

import totpvault.logging as vault_logging
from totpvault.models import KdfCost, Record

# keeps encrypted-vault tests fast; real vaults use DEFAULT_KDF_COST
FAST_COST = KdfCost(time_cost=1, memory_cost=1024, parallelism=1)

RFC_SEED_SHA1 = b"12345678901234567890"
RFC_SEED_SHA256 = b"12345678901234567890123456789012"
RFC_SEED_SHA512 = b"1234567890123456789012345678901234567890123456789012345678901234"


@pytest.fixture(autouse=True)
def isolated_logging(tmp_path, monkeypatch):
    """Keep log output out of the home directory and reset structlog between tests."""
    monkeypatch.setenv("TOTPVAULT_LOG", str(tmp_path / "logs" / "totpvault.log"))
    monkeypatch.setattr(vault_logging, "_LOG_STREAM", None)
    yield
    structlog.reset_defaults()


@pytest.fixture
def fast_cost():
    return FAST_COST


@pytest.fixture
def example_record():
    return Record(
        label="Example:alice@example.com",
        issuer="Example",
        account="alice@example.com",
        secret="JBSWY3DPEHPK3PXP",
    )


@pytest.fixture
def records():
    return [
        Record(label="github", issuer="GitHub", account="octocat", secret="JBSWY3DPEHPK3PXP"),
        Record(label="aws", secret=RFC_SEED_SHA256, algorithm="SHA256", digits=8, period=60),
        Record(label="bank: ünïcode", issuer="Bänk", secret=RFC_SEED_SHA512, algorithm="SHA512", digits=10),
    ]
