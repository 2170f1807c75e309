import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before anything reads settings at import time
_test_tmp_dir = tempfile.mkdtemp(prefix="uniupdates_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from uniupdates.app import create_app  # noqa: E402
from uniupdates.config import Settings  # noqa: E402
from uniupdates.service.email import EmailService  # noqa: E402
from uniupdates.service.otp import OTPService  # noqa: E402
from uniupdates.service.runtime import Runtime  # noqa: E402
from uniupdates.service.sessions import SessionManager  # noqa: E402
from uniupdates.service.tenants import build_tenant_policies  # noqa: E402
from uniupdates.service.tokens import TokenService  # noqa: E402
from uniupdates.storage.memory import MemoryStore  # noqa: E402
from uniupdates.storage.models import (  # noqa: E402
    SUPERADMIN,
    Account,
    PublicAccount,
)

ADMIN_PASSWORD = "Admin-Password-123"
USER_PASSWORD = "User-Password-123"


class RecordingEmail(EmailService):
    """Captures outgoing one-time codes instead of sending them."""

    def __init__(self):
        super().__init__()
        self.sent = []
        self.deliver = True

    def send_otp(self, to_email, code, *, purpose, ttl_minutes, name=None):
        self.sent.append({"to": to_email, "code": code, "purpose": purpose})
        return self.deliver

    def last_code(self, email):
        for message in reversed(self.sent):
            if message["to"] == email:
                return message["code"]
        raise AssertionError(f"no code sent to {email}")


def build_sessions(store, policy, email=None):
    """SessionManager wired to ``store`` the same way the runtime does it."""
    tokens = TokenService(policy)
    otp = OTPService(store, email or RecordingEmail(), policy)
    return SessionManager(store, tokens, otp, policy)


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


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
    )


@pytest.fixture
def policies(settings):
    return build_tenant_policies(settings)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def outbox():
    return RecordingEmail()


@pytest.fixture
def runtime(settings, outbox):
    rt = Runtime(settings)
    rt.email = outbox
    for services in rt.tenants.values():
        services.otp.email = outbox
    yield rt
    rt.close()


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


@pytest.fixture
def superadmin(runtime):
    return runtime.admins.create_admin(
        username="root",
        email="root@uniupdates.test",
        password=ADMIN_PASSWORD,
        name="Root Admin",
        role=SUPERADMIN,
    )


@pytest.fixture
def uniadmin(runtime):
    return runtime.admins.create_admin(
        username="campus-admin",
        email="campus@uniupdates.test",
        password=ADMIN_PASSWORD,
        name="Campus Admin",
        college_id="college-1",
    )


@pytest.fixture
def site_user(runtime):
    sessions = runtime.site.sessions
    account = PublicAccount(
        id=Account.new_id(),
        username="student",
        email="student@uniupdates.test",
        password_hash=sessions.hash_password(USER_PASSWORD),
        name="Student",
        is_verified=True,
    )
    return runtime.store.create_account(account)
