"""
Request identity.

Tokens are issued by the account service; here a bearer JWT is only decoded
into the acting user's id and role.
"""

import os
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from errors import ForbiddenRole
from schemas import Role

SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey-change")
ALGORITHM = os.getenv("ALGORITHM", "HS256")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


class CurrentUser(BaseModel):
    user_id: str
    role: str = Role.CUSTOMER.value
    name: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


def decode_token(token: str) -> CurrentUser:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception
    user_id: Optional[str] = payload.get("sub")
    if user_id is None:
        raise credentials_exception
    return CurrentUser(
        user_id=user_id,
        role=payload.get("role") or Role.CUSTOMER.value,
        name=payload.get("name"),
        email=payload.get("email"),
    )


async def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    return decode_token(token)


async def get_current_admin(current: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current.is_admin:
        raise ForbiddenRole("Admin access required")
    return current
