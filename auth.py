from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Settings
from schemas import Role, normalize_role

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=10)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: int
    role: Role


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # stored value is not a bcrypt hash
        return False


def create_access_token(user_id: int, role: str, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    to_encode = {
        "id": user_id,
        "role": normalize_role(role),
        "iat": now,
        "exp": now + timedelta(days=settings.jwt_expire_days),
    }
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


# Dependency: identity from the bearer token, no database lookup
async def get_current_user(
    token: str = Depends(oauth2_scheme),
    settings: Settings = Depends(get_app_settings),
) -> CurrentUser:
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise credentials_exception
    user_id = payload.get("id")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise credentials_exception
    return CurrentUser(id=user_id, role=normalize_role(payload.get("role")))


# Role guard
def require_role(role: Role):
    async def _guard(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role != role:
            raise HTTPException(status_code=403, detail="Forbidden")
        return user
    return _guard
