from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer

from scrapkart.auth.constants import logger
from scrapkart.auth.models import KNOWN_ROLES, ROLE_CUSTOMER, Principal
from scrapkart.auth.utils import decode_token


class Authentication(HTTPBearer):
    def __init__(self, auto_error=True):
        super().__init__(auto_error=auto_error)

    async def __call__(self, request: Request) -> Principal:
        auth_creds = await super().__call__(request)
        decoded_token = decode_token(auth_creds.credentials)

        if not decoded_token or not decoded_token.get("sub"):
            logger.warning("auth.token_rejected", extra={"security": True, "path": request.url.path})
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token provided.")

        role = decoded_token.get("role") or ROLE_CUSTOMER
        if role not in KNOWN_ROLES:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown role")
        return Principal(user_id=str(decoded_token["sub"]), role=role)


get_principal = Authentication()


def require_roles(*roles: str):
    async def _checker(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.has_role(*roles):
            logger.warning("auth.role_denied", extra={"security": True, "user_id": principal.user_id,
                                                      "role": principal.role, "required": list(roles)})
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")
        return principal
    return _checker
