from fastapi import Header, HTTPException, Request
from jose import JWTError, jwt


def verify_token(request: Request, authorization: str = Header(...)) -> str:
    """Validates the bearer token and returns the caller's subject id (the ``sub`` claim)."""
    settings = request.app.state.settings
    if not settings.jwt_secret:
        raise HTTPException(status_code=500, detail="Authentication is not configured")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        subject = claims.get("sub")
        if not subject:
            raise ValueError("token has no subject")
        return str(subject)
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
