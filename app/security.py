"""Bearer-token dependencies shared by the routers."""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from services.auth import AuthService, Capability, Principal, authorize, build_default_auth_service

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_auth_service() -> AuthService:
    return build_default_auth_service()


def get_principal(
    token: str = Depends(oauth2_scheme),
    auth: AuthService = Depends(get_auth_service),
) -> Principal:
    try:
        return auth.resolve(token)
    except PermissionError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def require(capability: Capability) -> Callable[..., Principal]:
    def checker(principal: Principal = Depends(get_principal)) -> Principal:
        if not authorize(principal, capability):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not enough permissions.")
        return principal

    return checker
