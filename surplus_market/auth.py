from datetime import datetime, timedelta, timezone

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, PASSWORD_HASH_ROUNDS, SECRET_KEY
from .database import get_db
from .errors import AuthenticationError, AuthorizationError
from .schemas import Role, UserOut

pwd_context = CryptContext(
    schemes=["bcrypt", "argon2"],
    deprecated="auto",
    bcrypt__rounds=PASSWORD_HASH_ROUNDS,
)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(user_id: int, role: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


oauth2_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> UserOut:
    if credentials is None:
        raise AuthenticationError("Not authenticated")

    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
        user_id = int(payload.get("sub"))
    except (JWTError, TypeError, ValueError):
        raise AuthenticationError("Could not validate credentials")

    from .crud.users import get_user_by_id

    user = get_user_by_id(db, user_id)
    if user is None:
        raise AuthenticationError("Could not validate credentials")
    return UserOut.model_validate(user)


def require_role(*roles: Role):
    """Dependency factory: the caller must hold one of ``roles``."""
    allowed = {Role(r) for r in roles}

    def _check(current_user: UserOut = Depends(get_current_user)) -> UserOut:
        if current_user.role not in allowed:
            names = " or ".join(sorted(r.value for r in allowed))
            raise AuthorizationError(f"Only {names} accounts can perform this action")
        return current_user

    return _check


def require_ownership(owner_id: int, actor: UserOut, what: str = "resource") -> None:
    if owner_id != actor.id:
        raise AuthorizationError(f"You do not own this {what}")


require_customer = require_role(Role.CUSTOMER)
require_company = require_role(Role.COMPANY)
