"""JWT Bearer Token Validation (HS256 tokens issued by the IAM module)"""
import jwt
from typing import Any, Dict

from ..config.settings import Settings
from ..domain.errors import AuthenticationError
from ..domain.models import ActorContext
from .logger import get_logger

logger = get_logger(__name__)


class JWTValidator:
    """Validates bearer tokens signed with the shared secret"""

    def __init__(self, settings: Settings):
        self.secret = settings.jwt_secret
        self.algorithm = settings.jwt_algorithm
        self.audience = settings.jwt_audience or None

    def validate_token(self, token: str) -> Dict[str, Any]:
        """
        Validate a bearer token

        Args:
            token: Token, with or without the 'Bearer ' prefix

        Returns:
            Decoded claims

        Raises:
            AuthenticationError: If the token is missing, expired or invalid
        """
        if not token:
            raise AuthenticationError("Token is missing")

        if token.startswith("Bearer "):
            token = token[7:]

        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={
                    "verify_exp": True,
                    "verify_aud": self.audience is not None,
                    "require": ["sub"],
                }
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Token expired")
            raise AuthenticationError("Token has expired")
        except jwt.InvalidAudienceError as e:
            logger.warning(f"Invalid token audience: {e}")
            raise AuthenticationError("Invalid token audience")
        except jwt.PyJWTError as e:
            logger.error(f"JWT validation error: {e}")
            raise AuthenticationError(f"Invalid token: {str(e)}")

    def get_actor_context(self, token: str) -> ActorContext:
        """Build the actor from ``sub`` and ``tenant_id`` claims"""
        claims = self.validate_token(token)

        tenant_id = claims.get("tenant_id")
        if not tenant_id:
            raise AuthenticationError("Token has no tenant_id claim")

        roles = claims.get("roles") or []
        if isinstance(roles, str):
            roles = [roles]

        return ActorContext(
            user_id=str(claims["sub"]),
            tenant_id=str(tenant_id),
            display_name=claims.get("name"),
            roles=list(roles)
        )


def issue_token(settings: Settings, user_id: str, tenant_id: str, **claims: Any) -> str:
    """Sign a token for local tooling and tests"""
    payload = {"sub": user_id, "tenant_id": tenant_id, **claims}
    if settings.jwt_audience and "aud" not in payload:
        payload["aud"] = settings.jwt_audience
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
