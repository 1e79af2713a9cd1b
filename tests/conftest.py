import asyncio
import inspect
import os

# Configure before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("ALLOWED_LINK_ORIGINS", "https://app.docuflow.test")
os.environ.setdefault("TOKEN_PURGE_INTERVAL_SECONDS", "0")
# Each test gets a fresh, unpersisted store and no Redis or SMTP
os.environ["SHARED_FS_ROOT"] = ""
os.environ["REDIS_URL"] = ""
os.environ["SMTP_HOST"] = ""

import pytest  # noqa: E402

from docuflow.service.auth import AuthContext  # noqa: E402
from docuflow.service.errors import DeliveryError  # noqa: E402
from docuflow.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402

OWNER_PASSWORD = "OwnerPass123!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    return get_runtime()


class RecordingMailer:
    """Stands in for EmailService; keeps every message and can be told to fail."""

    def __init__(self):
        self.resets = []
        self.invites = []
        self.fail_stage = None

    def _maybe_fail(self):
        if self.fail_stage:
            raise DeliveryError(
                "SMTPRecipientsRefused: rejected for jane@example.com", stage=self.fail_stage
            )

    def send_password_reset(self, to_email, full_name, link, ttl_minutes):
        self._maybe_fail()
        self.resets.append(
            {"to": to_email, "full_name": full_name, "link": link, "ttl_minutes": ttl_minutes}
        )

    def send_invite(self, to_email, firm_name, role, link, ttl_hours):
        self._maybe_fail()
        self.invites.append(
            {
                "to": to_email,
                "firm_name": firm_name,
                "role": role,
                "link": link,
                "ttl_hours": ttl_hours,
            }
        )


@pytest.fixture
def mailer(runtime):
    recorder = RecordingMailer()
    runtime.tokens.email = recorder
    return recorder


def make_firm(runtime, email="owner@firm-one.test", name="Firm One"):
    owner = runtime.store.create_user(email, "Olivia Owner", role="firm")
    runtime.auth.save_password(owner.id, OWNER_PASSWORD)
    firm = runtime.store.create_firm(name, owner.id)
    principal = AuthContext(user_id=owner.id, role="firm", email=owner.email)
    return owner, firm, principal


@pytest.fixture
def firm_factory(runtime):
    def _make(email="owner@firm-one.test", name="Firm One"):
        return make_firm(runtime, email=email, name=name)

    return _make


@pytest.fixture
def firm_one(firm_factory):
    return firm_factory()


@pytest.fixture
def owner_password():
    return OWNER_PASSWORD


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
