from fastapi import APIRouter, Depends, HTTPException
from fastapi import status as http_status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.cache import EffectiveAuthorization
from app.auth.dependencies import get_bearer_token, get_current_user
from app.auth.schemas import CurrentUser, LoginRequest, LoginResponse, LogoutResponse
from app.auth.services import login_user, logout_user, to_current_user
from app.core.exceptions import ServiceError
from app.db.session import get_db

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post(
    "/login",
    response_model=LoginResponse,
    status_code=http_status.HTTP_200_OK,
)
async def login(
    payload: LoginRequest,
    db: AsyncSession = Depends(get_db),
) -> LoginResponse:
    try:
        return await login_user(db, payload)
    except ServiceError as e:
        if e.status_code == http_status.HTTP_401_UNAUTHORIZED:
            raise HTTPException(status_code=e.status_code, detail=e.message, headers={"WWW-Authenticate": "Bearer"})
        if e.status_code == http_status.HTTP_500_INTERNAL_SERVER_ERROR:
            raise HTTPException(status_code=e.status_code, detail="Internal server error")
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/login-oauth")
async def login_oauth(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: AsyncSession = Depends(get_db),
):
    payload = LoginRequest(
        email=form_data.username.strip(),
        password=form_data.password,
    )
    try:
        result = await login_user(db, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {
        "access_token": result.access_token,
        "token_type": "bearer",
    }


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    token: str = Depends(get_bearer_token),
    current_user: EffectiveAuthorization = Depends(get_current_user),
) -> LogoutResponse:
    """Revoke the presented token and drop the caller's cached authorization."""
    await logout_user(token, current_user)
    return LogoutResponse()


@router.get("/me", response_model=CurrentUser)
async def me(current_user: EffectiveAuthorization = Depends(get_current_user)) -> CurrentUser:
    return to_current_user(current_user)
