"""Authentication and authorization dependencies for FastAPI routes.

`get_current_user` resolves the session token (cookie first, then an
`Authorization: Bearer` header for API clients) against the `sessions`
table and returns the user as a dict. `require_access` gates a route by
the module its path belongs to and the action its HTTP method implies;
`require_admin` restricts user/role/permission management.

All dependencies raise HTTPExceptions so they can be used directly
inside route signatures.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from . import permissions as perms
from . import services
from .config import settings
from .database import get_session

bearer_scheme = HTTPBearer(auto_error=False)


def session_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if token:
        return token
    if credentials and credentials.scheme.lower() == "bearer":
        return credentials.credentials
    return None


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    db: Session = Depends(get_session),
) -> dict:
    """FastAPI dependency that returns the authenticated user.

    Raises HTTPException(401) when the token is missing, unknown or
    expired.
    """
    token = session_token(request, credentials)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user = services.AuthService(db).resolve(token)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    request.state.user_id = user["id"]
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user["role"] != perms.ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


def require_access(request: Request, user: dict = Depends(get_current_user),
                   db: Session = Depends(get_session)) -> dict:
    """Gate a route by its path's module and its method's action.

    Paths with no module mapping only require authentication.
    """
    module_name = perms.module_for_path(request.url.path)
    if module_name is None:
        return user
    action = perms.action_for_method(request.method)
    if not services.PermissionService(db).has_permission(user["id"], module_name, action):
        raise HTTPException(status_code=403, detail=f"Forbidden: {action} permission on {module_name} required")
    return user
