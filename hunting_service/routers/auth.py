"""
调用方认证路由
POST /api/auth/login       - 登录获取 JWT
POST /api/auth/register    - 创建账号（管理员权限）
GET  /api/auth/me          - 当前调用方
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from hunting_service.models.response import ApiResponse
from hunting_service.services.auth_service import Principal, get_auth_service

router = APIRouter(prefix="/api/auth", tags=["认证"])

_bearer = HTTPBearer(auto_error=False)


class LoginRequest(BaseModel):
    username: str
    password: str


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=8)
    is_admin: bool = False


# ── 依赖注入 ──────────────────────────────────────────────

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Principal:
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="未提供认证令牌")
    token_data = get_auth_service().verify_token(credentials.credentials)
    if token_data is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="令牌无效或已过期")
    return Principal(username=token_data.sub, is_admin=token_data.is_admin)


async def require_admin(current_user: Principal = Depends(get_current_user)) -> Principal:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="需要管理员权限")
    return current_user


# ── 路由处理器 ────────────────────────────────────────────

@router.post("/login", response_model=ApiResponse)
async def login(body: LoginRequest):
    svc = get_auth_service()
    principal = await svc.authenticate(body.username, body.password)
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="用户名或密码错误")
    return ApiResponse.ok(
        data={"access_token": svc.create_access_token(principal), "token_type": "bearer"},
        message="登录成功",
    )


@router.post("/register", response_model=ApiResponse)
async def register(body: RegisterRequest, admin: Principal = Depends(require_admin)):
    """创建报表工具或分析员账号；数据库不可用时返回 503"""
    if not await get_auth_service().create_user(body.username, body.password, body.is_admin):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"用户名 '{body.username}' 已存在",
        )
    return ApiResponse.ok(message=f"账号 '{body.username}' 已由 {admin.username} 创建")


@router.get("/me", response_model=ApiResponse)
async def me(current_user: Principal = Depends(get_current_user)):
    return ApiResponse.ok(data=current_user.model_dump())
