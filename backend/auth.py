from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from flask import jsonify
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt,
    get_jwt_identity,
)

UNAUTHORIZED_PAYLOAD = {"error": True, "message": "unauthorized access"}
FORBIDDEN_PAYLOAD = {"error": True, "message": "Forbidden access"}

# Claims flask-jwt-extended manages itself; callers cannot override them.
RESERVED_CLAIMS = {"sub", "exp", "iat", "nbf", "jti", "type", "fresh", "csrf"}


def unauthorized_response():
    return jsonify(UNAUTHORIZED_PAYLOAD), 401


def register_token_handlers(jwt_manager: JWTManager):
    """Collapse every token failure into the same 401 payload."""

    @jwt_manager.unauthorized_loader
    def missing_token(_reason):
        return unauthorized_response()

    @jwt_manager.invalid_token_loader
    def invalid_token(_reason):
        return unauthorized_response()

    @jwt_manager.expired_token_loader
    def expired_token(_jwt_header, _jwt_payload):
        return unauthorized_response()


def issue_token(claims: Optional[Dict]) -> str:
    claims = dict(claims or {})
    identity = str(claims.get("email") or "")
    additional_claims = {
        key: value for key, value in claims.items() if key not in RESERVED_CLAIMS
    }
    return create_access_token(identity=identity, additional_claims=additional_claims)


def token_email() -> str:
    claims = get_jwt()
    email = claims.get("email")
    if email is None:
        email = get_jwt_identity()
    return str(email or "")


class Denial(Enum):
    FLAG = "flag"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    denial: Optional[Denial] = None


# Owner-checked routes and how each one refuses a mismatched email.
OWNERSHIP_POLICY: Dict[str, Denial] = {
    "admin": Denial.FLAG,
    "seller": Denial.FLAG,
    "user": Denial.FLAG,
    "selections": Denial.FORBIDDEN,
}


def check_ownership(route: str, requested_email: Optional[str]) -> AccessDecision:
    """Compare the token's email against the email a request asks about.

    Matching is exact; no case folding or trimming is applied.
    """
    denial = OWNERSHIP_POLICY.get(route)
    if denial is None:
        return AccessDecision(allowed=True)

    if requested_email is not None and requested_email == token_email():
        return AccessDecision(allowed=True)

    return AccessDecision(allowed=False, denial=denial)


def denial_response(route: str, decision: AccessDecision):
    if decision.denial is Denial.FLAG:
        return jsonify({route: False})
    return jsonify(FORBIDDEN_PAYLOAD), 403
