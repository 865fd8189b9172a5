import base64
import re
import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from compliance_monitor.audit.encryption import EncryptedEnvelope, FieldCipher, HashResult
from compliance_monitor.audit.service import AuditService
from compliance_monitor.config import DEFAULT_SENSITIVE_FIELDS
from compliance_monitor.db.database import create_schema, create_session_factory
from compliance_monitor.escalation.sink import EscalationSink
from compliance_monitor.probes.simulator import HttpxRequestSimulator
from compliance_monitor.workers.scheduler import MonitorScheduler

FIXED_NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

SANDBOX_URL = "http://sandbox.test"
PROBE_TOKEN = "probe-token"
USER_A_TOKEN = "token-a"
CSRF_TOKEN = "csrf-token"
CONTACT_RATE_LIMIT = 5
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class FakeClock:
    """Mutable clock injected into services."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeEncryptionProvider:
    """Reversible stand-in for the encryption collaborator (not secure)."""

    def encrypt(self, plaintext: str) -> EncryptedEnvelope:
        return EncryptedEnvelope(
            ciphertext=base64.b64encode(plaintext[::-1].encode()).decode(),
            iv="aXY=",
            salt="c2FsdA==",
            algorithm="test-reverse-b64",
            timestamp=FIXED_NOW.isoformat(),
        )

    def decrypt(self, envelope: EncryptedEnvelope) -> str:
        return base64.b64decode(envelope.ciphertext).decode()[::-1]

    def hash(self, value: str, salt: str | None = None) -> HashResult:
        salt = salt or "salt"
        return HashResult(hash=f"{salt}:{value[::-1]}", salt=salt)


class FailingEncryptionProvider(FakeEncryptionProvider):
    def encrypt(self, plaintext: str) -> EncryptedEnvelope:
        raise RuntimeError("key unavailable")


class BrokenDecryptionProvider(FakeEncryptionProvider):
    def decrypt(self, envelope: EncryptedEnvelope) -> str:
        raise RuntimeError("wrong key")


def contact_errors(body: dict) -> list[str]:
    """Field names that fail the secure sandbox's contact form rules."""
    errors = []
    name = body.get("name")
    if not isinstance(name, str) or not name or len(name) > 100:
        errors.append("name")
    if not isinstance(body.get("email"), str) or not EMAIL_RE.match(body["email"]):
        errors.append("email")
    if not body.get("message"):
        errors.append("message")
    return errors


def build_sandbox_app(vulnerable: bool) -> FastAPI:
    """Sandbox surface for probe tests.

    The secure variant enforces CSRF tokens, input validation, a contact
    form rate limit, authentication, per-user authorization and session
    regeneration. The vulnerable variant skips all of it, echoes input
    unescaped and leaks details in errors.
    """
    app = FastAPI()
    tokens = {PROBE_TOKEN: "probe_admin", USER_A_TOKEN: "probe_user_a"}
    accepted_contacts = []

    def current_user(request: Request) -> str | None:
        auth = request.headers.get("authorization", "")
        if not auth.startswith("Bearer "):
            return None
        return tokens.get(auth.removeprefix("Bearer "))

    def forged(request: Request) -> bool:
        return request.headers.get("x-csrf-token") != CSRF_TOKEN

    @app.post("/api/contact")
    async def contact(request: Request):
        body = await request.json()
        if vulnerable:
            return PlainTextResponse(f"Thanks {body.get('name')}: {body.get('message')}")
        if forged(request):
            return JSONResponse({"detail": "Forbidden"}, status_code=403)
        errors = contact_errors(body)
        if errors:
            return JSONResponse({"detail": "Invalid input", "fields": errors}, status_code=422)
        if len(accepted_contacts) >= CONTACT_RATE_LIMIT:
            return JSONResponse({"detail": "Too many requests"}, status_code=429)
        accepted_contacts.append(body["email"])
        return JSONResponse({"detail": "ok"})

    @app.post("/api/assessment-results")
    async def assessment_results(request: Request):
        body = await request.json()
        if vulnerable and "'" in str(body.get("message", "")):
            return PlainTextResponse('syntax error at or near "DROP"', status_code=500)
        if not vulnerable and forged(request):
            return JSONResponse({"detail": "Forbidden"}, status_code=403)
        return JSONResponse({"detail": "ok"})

    @app.get("/api/analytics")
    @app.get("/admin")
    async def protected(request: Request):
        if not vulnerable and current_user(request) is None:
            return JSONResponse({"detail": "Unauthorized"}, status_code=401)
        return JSONResponse({"visits": 10})

    @app.get("/api/session")
    async def session():
        response = JSONResponse({"detail": "ok"})
        response.set_cookie("session_id", uuid.uuid4().hex)
        return response

    @app.post("/api/login")
    async def login():
        response = JSONResponse({"detail": "logged in"})
        if not vulnerable:
            response.set_cookie("session_id", uuid.uuid4().hex)
        return response

    @app.get("/api/users/{user_id}/data")
    async def user_data(user_id: str, request: Request):
        if not vulnerable and current_user(request) != user_id:
            return JSONResponse({"detail": "Forbidden"}, status_code=403)
        return JSONResponse({"user_id": user_id, "email": "someone@example.com"})

    if vulnerable:

        @app.exception_handler(404)
        async def leaky_not_found(request: Request, exc):
            return PlainTextResponse(
                "Not found. database connection postgres://app:password@db/app", status_code=404
            )

    return app


def make_simulator(app: FastAPI) -> HttpxRequestSimulator:
    return HttpxRequestSimulator(
        SANDBOX_URL,
        timeout_seconds=5.0,
        auth_token=PROBE_TOKEN,
        user_tokens={"probe_user_a": USER_A_TOKEN},
        csrf_token=CSRF_TOKEN,
        transport=httpx.ASGITransport(app=app),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def provider():
    return FakeEncryptionProvider()


@pytest.fixture
def cipher(provider):
    return FieldCipher(provider, DEFAULT_SENSITIVE_FIELDS)


@pytest.fixture
def audit(session_factory, cipher, clock):
    return AuditService(session_factory, cipher, clock=clock)


@pytest.fixture
def sink(audit):
    return EscalationSink(audit)


@pytest.fixture
def scheduler():
    """Scheduler that is never started; tests drive jobs with run_once."""
    return MonitorScheduler()


@pytest.fixture
def secure_simulator():
    return make_simulator(build_sandbox_app(vulnerable=False))


@pytest.fixture
def vulnerable_simulator():
    return make_simulator(build_sandbox_app(vulnerable=True))
