import pytest

from medkey_core.client import MedKeyClient
from medkey_core.gateway import InMemoryGateway
from medkey_core.keystore import InMemoryKeyStore
from medkey_core.ledger import InMemoryLedger
from medkey_core.retry import RetryPolicy

ALICE = "0xA11CE00000000000000000000000000000000001"
BOB = "0xB0B0000000000000000000000000000000000002"
CAROL = "0xCA40100000000000000000000000000000000003"


class FakeClock:
    """Records requested sleeps instead of waiting."""

    def __init__(self):
        self.sleeps = []

    def __call__(self, seconds):
        self.sleeps.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def gateway():
    return InMemoryGateway()


@pytest.fixture
def retry_policy():
    return RetryPolicy(attempts=3, interval=0.5, backoff=2.0)


@pytest.fixture
def confirm_policy():
    return RetryPolicy(attempts=4, interval=3.0)


def make_client(ledger, gateway, clock, retry_policy, confirm_policy, keystore=None):
    return MedKeyClient(
        keystore=keystore or InMemoryKeyStore(),
        ledger=ledger,
        gateway=gateway,
        retry_policy=retry_policy,
        confirm_policy=confirm_policy,
        sleep=clock,
    )


@pytest.fixture
def new_client(ledger, gateway, clock, retry_policy, confirm_policy):
    """Factory for per-user clients that share one ledger and gateway."""
    def _make(keystore=None):
        return make_client(ledger, gateway, clock, retry_policy, confirm_policy, keystore=keystore)
    return _make
