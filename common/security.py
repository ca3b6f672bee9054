import hashlib, time, jwt
from typing import Dict, Optional
from common.settings import Settings

ALGO = "HS256"

def hash_password(password: str) -> str:
    # MD5 hex digest, kept compatible with existing user rows
    return hashlib.md5(password.encode("utf-8")).hexdigest()

def mint_user_jwt(sub: str, config: Settings, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": config.jwt_issuer,
        "sub": sub,
        "iat": now,
        "exp": now + config.jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=ALGO)

def verify_token(token: str, config: Settings) -> Dict:
    options = {"require": ["exp", "iat", "iss", "sub"]}
    return jwt.decode(
        token,
        config.jwt_secret,
        algorithms=[ALGO],
        options=options,
        issuer=config.jwt_issuer,
    )
