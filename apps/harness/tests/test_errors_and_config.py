from __future__ import annotations

import pytest

from lemmyfed_harness.config import HarnessConfig, default_endpoint
from lemmyfed_harness.errors import (
    AbsentValueError,
    AuthError,
    ErrorKind,
    HarnessError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    classify_api_error,
)
from lemmyfed_harness.maybe import Absent, Present
from lemmyfed_harness.security import redact_sensitive_text

_LEAK_JWT = "eyJhbGciOiJIUzI1NiJ9.secret-claims"
_LEAK_PASSWORD = "lemmylemmy"


@pytest.mark.parametrize(
    ("code", "expected"),
    [
        ("incorrect_login", AuthError),
        ("couldnt_find_object", NotFoundError),
        ("not_found", NotFoundError),
        ("community_already_exists", ValidationError),
        ("banned_from_community", PermissionDeniedError),
        ("no_post_edit_allowed", PermissionDeniedError),
    ],
)
def test_error_code_wins_over_status(code: str, expected: type[HarnessError]) -> None:
    error = classify_api_error(400, code, operation="POST alpha/api/v3/post")

    assert type(error) is expected
    assert error.kind is ErrorKind(code)
    assert error.code == code
    assert error.status_code == 400
    assert code in str(error)


def test_status_fallback_for_unknown_codes() -> None:
    assert isinstance(classify_api_error(404, None, operation="GET"), NotFoundError)
    assert isinstance(classify_api_error(401, "weird_code", operation="GET"), AuthError)
    assert isinstance(classify_api_error(422, None, operation="POST"), ValidationError)
    server_error = classify_api_error(502, None, operation="GET")
    assert type(server_error) is HarnessError
    assert server_error.kind is None


def test_absent_unwrap_raises_lookup_error() -> None:
    with pytest.raises(AbsentValueError) as caught:
        Absent("no copy on beta").unwrap()
    assert isinstance(caught.value, LookupError)
    assert "no copy on beta" in str(caught.value)
    assert Absent().value_or(3) == 3
    assert Present(5).value_or(3) == 5
    assert Present(5).unwrap() == 5


def test_redaction_hides_credentials() -> None:
    text = redact_sensitive_text(
        f'{{"jwt": "{_LEAK_JWT}", "password": "{_LEAK_PASSWORD}"}} '
        f"Authorization: Bearer {_LEAK_JWT} /api/v3/site?auth={_LEAK_JWT}"
    )

    assert text is not None
    assert _LEAK_JWT not in text
    assert _LEAK_PASSWORD not in text
    assert "[REDACTED]" in text
    assert redact_sensitive_text(None) is None
    assert redact_sensitive_text("nothing to hide") == "nothing to hide"


def test_redaction_masks_known_secret_values_anywhere() -> None:
    text = redact_sensitive_text("login as lemmy_alpha with lemmylemmy failed", ("lemmylemmy", None, ""))

    assert text == "login as lemmy_alpha with [REDACTED] failed"


def test_default_config_matches_local_federation_setup() -> None:
    config = HarnessConfig()

    assert [endpoint.name for endpoint in config.instances] == ["alpha", "beta", "gamma", "delta", "epsilon"]
    alpha = config.endpoint("alpha")
    assert alpha.base_url == "http://127.0.0.1:8541"
    assert alpha.federation_host == "lemmy-alpha:8541"
    assert alpha.seed_username == "lemmy_alpha"
    assert config.endpoint("epsilon").federation_host == "lemmy-epsilon:8581"
    assert config.federation.timeout_seconds == 10.0
    assert config.relay.timeout_seconds == 60.0
    with pytest.raises(KeyError):
        config.endpoint("zeta")


def test_config_from_env(monkeypatch) -> None:
    monkeypatch.setenv("LEMMYFED_BETA_URL", "http://beta.test:9000/")
    monkeypatch.setenv("LEMMYFED_BETA_HOST", "beta.test:9000")
    monkeypatch.setenv("LEMMYFED_PASSWORD", "  ")
    monkeypatch.setenv("LEMMYFED_API_PREFIX", "api/v4/")
    monkeypatch.setenv("LEMMYFED_CONVERGENCE_TIMEOUT_SECONDS", "4")
    monkeypatch.setenv("LEMMYFED_POLL_INTERVAL_SECONDS", "0.25")

    config = HarnessConfig.from_env()

    beta = config.endpoint("beta")
    assert beta.base_url == "http://beta.test:9000"
    assert beta.federation_host == "beta.test:9000"
    assert config.endpoint("alpha") == default_endpoint("alpha", 0)
    assert config.password == "lemmylemmy"
    assert config.api_prefix == "/api/v4"
    assert config.federation.timeout_seconds == 4.0
    assert config.federation.poll_interval_seconds == 0.25
    assert config.relay.poll_interval_seconds == 0.25


def test_config_from_env_rejects_bad_numbers(monkeypatch) -> None:
    monkeypatch.setenv("LEMMYFED_RELAY_TIMEOUT_SECONDS", "soon")
    with pytest.raises(ValueError):
        HarnessConfig.from_env()
