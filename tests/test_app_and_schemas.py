import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from conftest import make_settings
from junicore.api import schemas
from junicore.app import create_app
from junicore.service.runtime import Runtime
from junicore.storage.models import Role


def test_security_headers_and_cors(memory_store):
    settings = make_settings(cors_allow_origins="http://localhost:3000")
    runtime = Runtime(settings, store=memory_store)
    with TestClient(create_app(runtime)) as client:
        response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["API-Version"] == "0.1.0"
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_healthz_starting_without_runtime():
    app = create_app(settings=make_settings())
    # no lifespan: the runtime is only built at startup
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 503
    assert response.json()["status"] == "starting"


def test_injected_runtime_survives_shutdown(runtime):
    with TestClient(create_app(runtime)):
        assert runtime.dispatcher.running
    assert not runtime.dispatcher.running
    assert runtime.store.get_user_by_email("nobody@example.com") is None


@pytest.mark.parametrize(
    "email",
    ["missing-at.example.com", "a@b", "a@-bad-.com", "x" * 65 + "@example.com", "sp ace@example.com"],
)
def test_invalid_emails_rejected(email):
    with pytest.raises(ValidationError):
        schemas.LoginRequest(email=email, password="x")


def test_email_normalized():
    request = schemas.LoginRequest(email="  Mixed.Case@Example.COM ", password="x")
    assert request.email == "mixed.case@example.com"


def test_zero_width_characters_stripped():
    request = schemas.PasswordResetRequest(email="user\u200b@example.com")
    assert request.email == "user@example.com"


@pytest.mark.parametrize(
    "password,ok",
    [("Abcdefg1", True), ("abcdefg1", False), ("ABCDEFGH", False), ("Ab1", False), ("A1" + "a" * 127, False)],
)
def test_password_strength(password, ok):
    if ok:
        assert schemas.RegisterRequest(email="a@example.com", password=password).password == password
    else:
        with pytest.raises(ValidationError):
            schemas.RegisterRequest(email="a@example.com", password=password)


def test_register_role_case_insensitive():
    request = schemas.RegisterRequest(email="a@example.com", password="Abcdefg1", role="companion")
    assert request.role == Role.COMPANION


def test_token_length_bounds():
    with pytest.raises(ValidationError):
        schemas.EmailVerificationRequest(token="short")
    with pytest.raises(ValidationError):
        schemas.PasswordResetConfirm(token="t" * 300, new_password="Abcdefg1")
