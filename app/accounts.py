"""Authentication and user management routes."""

from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api import page_metadata
from app.schemas import (
    ApiResponse,
    ChangePasswordRequest,
    LoginRequest,
    Role,
    TokenResponse,
    UserCreate,
    UserResponse,
)
from app.security import get_auth_service, get_principal, require
from models.records import PageRequest, SortOrder
from services.auth import AuthService, Capability, Principal
from services.users import USER_SORT_FIELDS, UserService, build_default_user_service

router = APIRouter()

manage_users = require(Capability.manage_users)
own_account = require(Capability.manage_own_account)


def get_user_service() -> UserService:
    return build_default_user_service()


def _login(auth: AuthService, payload: LoginRequest, role: Role) -> ApiResponse[TokenResponse]:
    try:
        token = auth.login(payload.email, payload.password, role=role)
    except PermissionError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    return ApiResponse(data=TokenResponse(access_token=token))


@router.post("/auth/login", response_model=ApiResponse[TokenResponse], summary="User login.")
def login(payload: LoginRequest, auth: AuthService = Depends(get_auth_service)) -> ApiResponse[TokenResponse]:
    return _login(auth, payload, Role.user)


@router.post("/auth/admin/login", response_model=ApiResponse[TokenResponse], summary="Admin login.")
def admin_login(
    payload: LoginRequest, auth: AuthService = Depends(get_auth_service)
) -> ApiResponse[TokenResponse]:
    return _login(auth, payload, Role.admin)


@router.post("/auth/logout", response_model=ApiResponse[Dict[str, str]], summary="Revoke the current token.")
def logout(
    principal: Principal = Depends(get_principal),
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[Dict[str, str]]:
    auth.logout(principal)
    return ApiResponse(data={"message": "Logged out successfully."})


@router.patch(
    "/auth/change-password",
    response_model=ApiResponse[UserResponse],
    summary="Change the current account's password.",
)
def change_password(
    payload: ChangePasswordRequest,
    principal: Principal = Depends(own_account),
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[UserResponse]:
    try:
        account = auth.change_password(principal, payload.current_password, payload.new_password)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.args[0]) from exc
    return ApiResponse(data=UserResponse.from_account(account))


@router.get("/auth/profile", response_model=ApiResponse[UserResponse], summary="Current account profile.")
def profile(
    principal: Principal = Depends(get_principal),
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[UserResponse]:
    try:
        account = auth.profile(principal)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.args[0]) from exc
    return ApiResponse(data=UserResponse.from_account(account))


@router.post(
    "/users",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[UserResponse],
    summary="Register a user account.",
)
def create_user(
    payload: UserCreate,
    users: UserService = Depends(get_user_service),
) -> ApiResponse[UserResponse]:
    try:
        account = users.create_user(payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return ApiResponse(data=UserResponse.from_account(account), message="User created successfully.")


@router.get("/users", response_model=ApiResponse[List[UserResponse]], summary="List user accounts.")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: SortOrder = Query(SortOrder.desc, alias="sortOrder"),
    next_page_token: Optional[str] = Query(None, alias="nextPageToken"),
    _: Principal = Depends(manage_users),
    users: UserService = Depends(get_user_service),
) -> ApiResponse[List[UserResponse]]:
    if sort_by not in USER_SORT_FIELDS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"sortBy must be one of: {', '.join(sorted(USER_SORT_FIELDS))}.",
        )
    request = PageRequest(
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        next_page_token=next_page_token,
    )
    result = users.list_users(request, search=search)
    return ApiResponse(
        data=[UserResponse.from_account(account) for account in result.items],
        metadata=page_metadata(result),
    )


@router.get("/users/{user_id}", response_model=ApiResponse[UserResponse], summary="Fetch one user account.")
def get_user(
    user_id: str,
    _: Principal = Depends(manage_users),
    users: UserService = Depends(get_user_service),
) -> ApiResponse[UserResponse]:
    try:
        account = users.get_user(user_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.args[0]) from exc
    return ApiResponse(data=UserResponse.from_account(account))
