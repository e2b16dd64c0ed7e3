"""
Root conftest.py: Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  session-scoped  : RSA key pair, test JWKS
  function-scoped : make_token, user_payload, fake clock, OpenAI mock,
                    remote pipeline fake, JobServices, async_client

Environment strategy:
  - No external service is ever contacted.
  - The privacy pipeline is an httpx.MockTransport backed by FakeRemote.
  - OpenAI is a MagicMock whose endpoints are AsyncMocks.
  - JWT tokens are built with a test RSA key: no live auth provider needed.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no I/O)
  pytest -m integration           # API tests through the ASGI app
  pytest tests/unit/test_auth.py  # single file
"""

from __future__ import annotations

import asyncio
import base64
import json
import os
import time
from types import SimpleNamespace
from typing import AsyncGenerator, Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("OPENAI_API_KEY",  "")
os.environ.setdefault("PRIVACY_API_URL", "")
os.environ.setdefault("APP_ENV",         "development")
os.environ.setdefault("DEBUG",           "true")

os.environ.setdefault("AUTH_ISSUER",   "https://test.auth.example.com/")
os.environ.setdefault("AUTH_AUDIENCE", "test-api-audience")

TEST_KID      = "test-key-id-2024"
TEST_ISSUER   = "https://test.auth.example.com/"
TEST_AUDIENCE = "test-api-audience"
TEST_USER_ID  = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"

PRIVACY_URL = "http://privacy.test"


# ─────────────────────────────────────────────────────────────────────────────
# RSA key pair for signing test JWTs (generated once per session)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def rsa_private_key():
    """Generate a 2048-bit RSA private key for test JWT signing."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_private_key_pem(rsa_private_key) -> bytes:
    """PEM-encoded private key bytes (used by jose.jwt.encode)."""
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def test_jwks(rsa_private_key) -> dict:
    """The JWKS document a real /.well-known/jwks.json would return."""
    numbers = rsa_private_key.public_key().public_numbers()

    def _b64url(n: int) -> str:
        byte_length = (n.bit_length() + 7) // 8
        return base64.urlsafe_b64encode(n.to_bytes(byte_length, "big")).rstrip(b"=").decode()

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": TEST_KID,
                "n":   _b64url(numbers.n),
                "e":   _b64url(numbers.e),
            }
        ]
    }


# ─────────────────────────────────────────────────────────────────────────────
# JWT token factory
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_token(rsa_private_key_pem):
    """
    Factory fixture: returns a function that builds signed test JWTs.

    Usage:
        token = make_token()
        token = make_token(expired=True)
        token = make_token(audience="someone-else")
    """
    from jose import jwt as jose_jwt

    def _build(
        sub:      str | None = TEST_USER_ID,
        expired:  bool = False,
        audience: str  = TEST_AUDIENCE,
        issuer:   str  = TEST_ISSUER,
        kid:      str  = TEST_KID,
    ) -> str:
        now = int(time.time())
        claims: dict = {
            "email": "test@example.com",
            "iss":   issuer,
            "aud":   audience,
            "exp":   now - 60 if expired else now + 3600,
            "iat":   now,
        }
        if sub is not None:
            claims["sub"] = sub

        return jose_jwt.encode(
            claims,
            rsa_private_key_pem,
            algorithm="RS256",
            headers={"kid": kid},
        )

    return _build


@pytest.fixture
def user_payload():
    """Pre-built TokenPayload for an authenticated caller."""
    from app.auth.token import TokenPayload
    return TokenPayload(
        sub=TEST_USER_ID,
        email="test@example.com",
        exp=int(time.time()) + 3600,
        iss=TEST_ISSUER,
        token="caller-jwt",
    )


# ─────────────────────────────────────────────────────────────────────────────
# Sample documents
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal valid PDF: passes magic-byte check (%PDF header)."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        b"2 0 obj\n<< /Type /Pages /Kids [3 0 R] /Count 1 >>\nendobj\n"
        b"3 0 obj\n<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>\nendobj\n"
        b"xref\n0 4\n"
        b"0000000000 65535 f \n"
        b"0000000009 00000 n \n"
        b"0000000058 00000 n \n"
        b"0000000115 00000 n \n"
        b"trailer\n<< /Size 4 /Root 1 0 R >>\n"
        b"startxref\n195\n%%EOF"
    )


@pytest.fixture
def two_page_pdf_bytes() -> bytes:
    """Two-page invoice PDF with a real text layer, built with PyMuPDF."""
    import fitz

    doc = fitz.open()
    for page_no in (1, 2):
        page = doc.new_page()
        page.insert_text(
            (72, 72),
            f"INVOICE INV-2024-104 page {page_no}\n"
            "Seller: Dell Hungary Ltd., Budapest, Infopark Promenade 1.\n"
            "Buyer: Peter Nagy, Szeged, Jozsef Attila Street 3.\n"
            "Dell laptop   1 x 220000 HUF   net 220000   gross 279400\n",
        )
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def invoice_payload() -> dict:
    """A well-formed extraction result."""
    return {
        "seller": {"name": "Dell Hungary Ltd.", "address": "Budapest", "tax_id": "11223344-2-13",
                   "email": "", "phone": ""},
        "buyer": {"name": "Peter Nagy", "address": "Szeged", "tax_id": ""},
        "invoice_number": "INV-2024-104",
        "issue_date": "2024.06.01.",
        "fulfillment_date": "2024-06-02",
        "due_date": "15.06.2024",
        "payment_method": "Cash",
        "currency": "HUF",
        "invoice_data": [
            {"name": "Dell laptop", "quantity": "1", "unit_price": "220000",
             "net": "220000", "gross": "279400", "currency": "HUF"},
        ],
    }


# ─────────────────────────────────────────────────────────────────────────────
# Deterministic clock for eviction / TTL tests
# ─────────────────────────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ─────────────────────────────────────────────────────────────────────────────
# Mock OpenAI client
# ─────────────────────────────────────────────────────────────────────────────

def assistant_messages(text: str) -> SimpleNamespace:
    """Shape of beta.threads.messages.list() with one text message."""
    block = SimpleNamespace(type="text", text=SimpleNamespace(value=text))
    return SimpleNamespace(data=[SimpleNamespace(content=[block])])


def run_status(status: str, error: str | None = None) -> SimpleNamespace:
    last_error = SimpleNamespace(message=error) if error else None
    return SimpleNamespace(status=status, last_error=last_error)


def chat_completion(text: str) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


@pytest.fixture
def openai_client(invoice_payload):
    """
    MagicMock AsyncOpenAI. Every endpoint the extractor touches is an
    AsyncMock; the default run completes on the second poll.
    """
    client = MagicMock()
    client.files.create                   = AsyncMock(return_value=SimpleNamespace(id="file-1"))
    client.beta.assistants.create         = AsyncMock(return_value=SimpleNamespace(id="asst-1"))
    client.beta.threads.create            = AsyncMock(return_value=SimpleNamespace(id="thread-1"))
    client.beta.threads.messages.create   = AsyncMock(return_value=SimpleNamespace(id="msg-1"))
    client.beta.threads.runs.create       = AsyncMock(return_value=SimpleNamespace(id="run-1"))
    client.beta.threads.runs.retrieve     = AsyncMock(
        side_effect=[run_status("in_progress"), run_status("completed")]
    )
    client.beta.threads.messages.list     = AsyncMock(
        return_value=assistant_messages("```json\n" + json.dumps(invoice_payload) + "\n```")
    )
    client.chat.completions.create        = AsyncMock(
        return_value=chat_completion(json.dumps(invoice_payload))
    )
    return client


@pytest.fixture
def extractor(openai_client):
    from app.processing.assistant import InvoiceExtractor
    return InvoiceExtractor(client=openai_client, poll_interval=0, max_poll_attempts=15)


# ─────────────────────────────────────────────────────────────────────────────
# Fake remote "privacy" pipeline behind httpx.MockTransport
# ─────────────────────────────────────────────────────────────────────────────

class FakeRemote:
    """
    Scriptable stand-in for the externally hosted pipeline.

    progress  : list of responses returned by successive GET /progress polls;
                each item is a dict (200 JSON), an int (bare status code) or an
                Exception instance (raised as a transport error). The last item
                repeats once the list is exhausted.
    """

    def __init__(self) -> None:
        self.progress:        list = [{"status": "processing", "progress": 10, "stage": "ocr"}]
        self.submit_response: object = {"status": "ok"}
        self.cancel_response: object = {"cancelled": True}
        self.health_response: object = {"status": "ok"}
        self.requests:        list[httpx.Request] = []
        self.submit_gate:     asyncio.Event | None = None

    def calls(self, method: str, prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path.startswith(prefix)]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "POST" and path == "/process-invoice":
            if self.submit_gate is not None:
                await self.submit_gate.wait()
            return self._respond(self.submit_response, request)
        if request.method == "GET" and path.startswith("/progress/"):
            item = self.progress.pop(0) if len(self.progress) > 1 else self.progress[0]
            return self._respond(item, request)
        if request.method == "DELETE" and path.startswith("/cancel-job/"):
            return self._respond(self.cancel_response, request)
        if request.method == "GET" and path == "/health":
            return self._respond(self.health_response, request)
        return httpx.Response(404, json={"error": "not found"})

    @staticmethod
    def _respond(item: object, request: httpx.Request) -> httpx.Response:
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return httpx.Response(item, text="remote failure")
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest_asyncio.fixture
async def remote_http(remote) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(remote.handler)) as client:
        yield client


# ─────────────────────────────────────────────────────────────────────────────
# JobServices
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_settings() -> Callable:
    """Settings with fast timers; keyword arguments override fields."""
    from app.core.config import Settings

    def _build(**overrides):
        values = dict(
            openai_api_key="",
            privacy_api_url=PRIVACY_URL,
            privacy_api_key="remote-key",
            assistant_poll_interval_seconds=0.0,
            bridge_poll_interval_seconds=0.01,
            stream_keepalive_seconds=5.0,
        )
        values.update(overrides)
        return Settings(**values)

    return _build


@pytest.fixture
def services(make_settings, remote_http, extractor):
    """Fully wired JobServices with the OpenAI mock and the fake remote."""
    from app.jobs.container import build_services
    return build_services(make_settings(), http=remote_http, extractor=extractor)


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI test client with dependency overrides
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_with_overrides(services, user_payload):
    """
    FastAPI app with external dependencies overridden:
      - get_current_user / get_stream_user → user_payload (no JWT verification)
      - get_services                       → the services fixture
    """
    from app.main import app
    from app.auth.token import get_current_user, get_stream_user
    from app.jobs.container import get_services

    app.dependency_overrides[get_current_user] = lambda: user_payload
    app.dependency_overrides[get_stream_user]  = lambda: user_payload
    app.dependency_overrides[get_services]     = lambda: services

    yield app

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the overridden app.

    httpx >= 0.28 removed the 'app=' shortcut; use ASGITransport explicitly.
    """
    from httpx import ASGITransport
    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def unauthenticated_client(services) -> AsyncGenerator[AsyncClient, None]:
    """Client with real auth dependencies; only services are overridden."""
    from httpx import ASGITransport
    from app.main import app
    from app.jobs.container import get_services

    app.dependency_overrides[get_services] = lambda: services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def parse_sse(body: str) -> list[tuple[str, dict]]:
    """Split an event-stream body into (event, data) pairs; comments dropped."""
    events: list[tuple[str, dict]] = []
    for block in body.split("\n\n"):
        if not block.strip() or block.startswith(":"):
            continue
        name, data = "message", ""
        for line in block.splitlines():
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = line[len("data: "):]
        events.append((name, json.loads(data) if data else {}))
    return events
