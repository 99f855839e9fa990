from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.schemas import User
from app.storage import Storage
from app.utils import verify_access_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")
oauth2_scheme_optional = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def _load_user(token: str, storage: Storage) -> Optional[User]:
    payload = verify_access_token(token)
    if payload is None:
        return None
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    return storage.get_user(user_id)


def get_current_user(token: str = Depends(oauth2_scheme), storage: Storage = Depends(get_storage)) -> User:
    user = _load_user(token, storage)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_optional_user(
    token: Optional[str] = Depends(oauth2_scheme_optional),
    storage: Storage = Depends(get_storage),
) -> Optional[User]:
    """Viewer for read endpoints; anonymous when the token is absent or bad."""
    if not token:
        return None
    return _load_user(token, storage)


def viewer_id(viewer: Optional[User] = Depends(get_optional_user)) -> Optional[int]:
    return viewer.id if viewer else None
