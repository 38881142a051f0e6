import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="verigate_test_")
os.environ.setdefault("STATE_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from verigate.config import Settings  # noqa: E402
from verigate.service.identity import IdentityService  # noqa: E402
from verigate.service.notifications import DeliveryResult  # noqa: E402
from verigate.storage.memory import MemoryStore  # noqa: E402
from verigate.storage.models import utcnow  # noqa: E402


class RecordingGateway:
    """Notification gateway that keeps every message instead of sending it."""

    def __init__(self, *, fail_email: bool = False, fail_sms: bool = False):
        self.emails = []
        self.sms = []
        self.fail_email = fail_email
        self.fail_sms = fail_sms

    def send_email(self, address, subject, body):
        self.emails.append({"to": address, "subject": subject, "body": body})
        if self.fail_email:
            return DeliveryResult(False, "email", "smtp unavailable")
        return DeliveryResult(True, "email")

    def send_sms(self, number, body):
        self.sms.append({"to": number, "body": body})
        if self.fail_sms:
            return DeliveryResult(False, "sms", "provider returned 503")
        return DeliveryResult(True, "sms")

    def last_email_token(self):
        """Return the token embedded in the most recent email link."""
        body = self.emails[-1]["body"]
        for line in body.splitlines():
            line = line.strip()
            if line.startswith("http"):
                return line.rstrip("/").rsplit("/", 1)[-1]
        raise AssertionError("no link in email body")

    def last_sms_code(self):
        body = self.sms[-1]["body"]
        return next(word for word in body.replace(".", " ").split() if word.isdigit() and len(word) >= 4)


class FakeClock:
    """Controllable clock for expiry tests."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        argon2_time_cost=1,
        argon2_memory_cost=8,
        argon2_parallelism=1,
        state_root=_test_tmp_dir,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(memory_store, settings, gateway, clock):
    return IdentityService(memory_store, settings, gateway, clock=clock)


@pytest.fixture
def registered(service, gateway):
    """Register an identity with email and phone; return (identity_id, email token, phone code)."""
    result = service.register(
        "Ada Lovelace", "ada@example.com", "Correct-Horse1", phone="+15551234567"
    )
    assert result.ok, result.error
    return result.value.identity_id, gateway.last_email_token(), gateway.last_sms_code()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    from verigate.service.runtime import reset_runtime_for_tests

    reset_runtime_for_tests(gateway=RecordingGateway())
    yield
