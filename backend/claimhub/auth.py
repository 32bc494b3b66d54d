from fastapi import HTTPException, Depends
from jose import jwt, JWTError
from datetime import datetime, timedelta, timezone
import os

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
ALGO = "HS256"
ID_TOKEN_MINUTES = int(os.getenv("ID_TOKEN_MINUTES", "60"))
CUSTOM_TOKEN_MINUTES = int(os.getenv("CUSTOM_TOKEN_MINUTES", "60"))

ISSUER = "claimhub"
ID_TOKEN_AUDIENCE = "claimhub"
CUSTOM_TOKEN_AUDIENCE = "claimhub:custom-token"

def create_token(sub: str, minutes: int = ID_TOKEN_MINUTES, audience: str = ID_TOKEN_AUDIENCE, secret: str = JWT_SECRET, **claims):
    now = datetime.now(timezone.utc)
    payload = {"sub": sub, "iss": ISSUER, "aud": audience, "iat": now, "exp": now + timedelta(minutes=minutes), **claims}
    return jwt.encode(payload, secret, algorithm=ALGO)

def decode_token(token: str, audience: str = ID_TOKEN_AUDIENCE, secret: str = JWT_SECRET) -> dict:
    """Raises ``jose.JWTError`` for bad signatures, expiry or a wrong audience."""
    return jwt.decode(token, secret, algorithms=[ALGO], audience=audience, issuer=ISSUER)

from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
security = HTTPBearer()

def require_user(token: HTTPAuthorizationCredentials = Depends(security)):
    try:
        data = decode_token(token.credentials)
        return data["sub"]
    except (JWTError, KeyError):
        raise HTTPException(status_code=401, detail="Invalid token")
