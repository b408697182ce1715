"""Bearer token decoding for students and school administrators."""
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from jose import JWTError, jwt

from .errors import Unauthenticated


@dataclass(frozen=True)
class Principal:
    id: UUID
    email: Optional[str] = None
    school_id: Optional[UUID] = None


def decode_principal(authorization: Optional[str], secret: str, algorithm: str = "HS256") -> Principal:
    """Decode ``Authorization: Bearer <jwt>`` into the caller's identity."""
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported authorization scheme")
        claims = jwt.decode(token, secret, algorithms=[algorithm])
        school_id = claims.get("schoolId")
        return Principal(
            id=UUID(str(claims["id"])),
            email=claims.get("email"),
            school_id=UUID(str(school_id)) if school_id else None,
        )
    except (JWTError, ValueError, KeyError) as e:
        raise Unauthenticated(detail=str(e)) from e


def issue_token(claims: dict, secret: str, algorithm: str = "HS256") -> str:
    """Sign ``claims``; used by operators and tests to mint tokens."""
    return jwt.encode({k: str(v) if isinstance(v, UUID) else v for k, v in claims.items()}, secret, algorithm=algorithm)
