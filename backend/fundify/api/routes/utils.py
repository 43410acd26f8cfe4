"""工具路由模块"""
from fastapi import APIRouter

router = APIRouter(prefix="/utils", tags=["utils"])


@router.get("/health-check/")
async def health_check() -> bool:
    """
    健康检查端点

    请求路径: GET /api/v1/utils/health-check/
    """
    return True
