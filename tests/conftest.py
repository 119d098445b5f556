import asyncio
import inspect
import os
import tempfile
from typing import List, Optional

# Environment must be in place before portalauth.app builds its module-level app
_test_tmp_dir = tempfile.mkdtemp(prefix="portalauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SSO_SERVER", "https://sso.test")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-automation-only-0123456789")

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from portalauth.app import create_app  # noqa: E402
from portalauth.config import Settings  # noqa: E402
from portalauth.service.auth import CredentialVerifier  # noqa: E402
from portalauth.service.runtime import Runtime  # noqa: E402
from portalauth.storage.memory import MemoryStore  # noqa: E402
from portalauth.storage.models import ROLE_ADMIN, ROLE_EMPLOYEE  # noqa: E402

SSO_SERVER = "https://sso.test"
DEMO_PASSWORD = "DemoPassword-2024"


class IdPStub:
    """Scriptable stand-in for the SSO server's user-info endpoint."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.payload: object = {
            "code": 200,
            "data": {
                "sub": "sso-jane",
                "username": "jdoe",
                "name": "Jane Doe",
                "email": "jane.doe@corp.example",
                "profile_image_url": "https://cdn.example/jane.png",
                "tenantId": 3,
            },
        }
        self.error: Optional[Exception] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if isinstance(self.payload, (bytes, str)):
            return httpx.Response(self.status_code, content=self.payload)
        return httpx.Response(self.status_code, json=self.payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        environment="test",
        redis_url=None,
        sso_server=SSO_SERVER,
        session_secret="test-session-secret-for-automation-only-0123456789",
        login_rate_limit_per_minute=5,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def verifier(store):
    return CredentialVerifier(store)


@pytest.fixture
def idp():
    return IdPStub()


@pytest.fixture
def runtime(settings, store, idp):
    return Runtime(settings, store=store, sso_transport=idp.transport)


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime))


@pytest.fixture
def make_user(store, verifier):
    def _make_user(username: str, password: Optional[str] = None, **fields):
        password_hash = verifier.hash_password(password) if password else None
        fields.setdefault("role", ROLE_EMPLOYEE)
        return store.create_user(username, password_hash=password_hash, **fields)

    return _make_user


@pytest.fixture
def demo_password():
    return DEMO_PASSWORD


@pytest.fixture
def demo_user(make_user):
    return make_user(
        "demo_admin",
        DEMO_PASSWORD,
        role=ROLE_ADMIN,
        first_name="Demo",
        last_name="Administrator",
        email="demo_admin@example.com",
    )


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
