"""Tests for bearer token validation"""
import time

import jwt
import pytest

from approval_engine.domain.errors import AuthenticationError
from approval_engine.utils.jwt import JWTValidator, issue_token


@pytest.fixture
def validator(settings):
    return JWTValidator(settings)


def test_actor_from_token(settings, validator):
    token = issue_token(settings, "u_cfo", "acme", name="Finance Director", roles="approver")

    actor = validator.get_actor_context(f"Bearer {token}")

    assert actor.user_id == "u_cfo"
    assert actor.tenant_id == "acme"
    assert actor.display_name == "Finance Director"
    assert actor.roles == ["approver"]


def test_missing_token(validator):
    with pytest.raises(AuthenticationError, match="missing"):
        validator.validate_token("")


def test_expired_token(settings, validator):
    token = issue_token(settings, "u_cfo", "acme", exp=int(time.time()) - 60)
    with pytest.raises(AuthenticationError, match="expired"):
        validator.validate_token(token)


def test_wrong_secret(validator):
    token = jwt.encode({"sub": "u_cfo", "tenant_id": "acme"}, "x" * 40, algorithm="HS256")
    with pytest.raises(AuthenticationError, match="Invalid token"):
        validator.validate_token(token)


def test_subject_is_required(settings, validator):
    token = jwt.encode({"tenant_id": "acme"}, settings.jwt_secret, algorithm="HS256")
    with pytest.raises(AuthenticationError):
        validator.validate_token(token)


def test_tenant_is_required(settings, validator):
    token = issue_token(settings, "u_cfo", "")
    with pytest.raises(AuthenticationError, match="tenant_id"):
        validator.get_actor_context(token)


def test_audience_is_checked_when_configured(settings):
    settings.jwt_audience = "approvals"
    validator = JWTValidator(settings)

    assert validator.validate_token(issue_token(settings, "u_cfo", "acme"))["aud"] == "approvals"
    foreign = issue_token(settings, "u_cfo", "acme", aud="billing")
    with pytest.raises(AuthenticationError, match="audience"):
        validator.validate_token(foreign)
