"""健康检查路由

GET /health: Liveness 检查，永远返回 200。
GET /ready: Readiness 检查，包含 SQLite 连通性、数据库目录、磁盘空间与调度器负载。
"""

import shutil
from pathlib import Path

import structlog
from codeanalyzer.core.config import get_db_path
from fastapi import APIRouter, Depends, Request
from starlette.responses import JSONResponse

from ..deps import get_store_group

log = structlog.get_logger()

router = APIRouter()


@router.get("/health")
async def health():
    """Liveness 检查 -- 永远返回 200"""
    return {"status": "ok"}


@router.get("/ready")
async def ready(request: Request, store_group=Depends(get_store_group)):
    """Readiness 检查 -- 验证核心依赖可用性

    检查项：
    1. sqlite: 数据库连通性
    2. data_dir: 数据库所在目录可访问性
    3. disk_space_mb: 磁盘剩余空间
    4. scheduler: 运行中与等待中的任务数
    """
    checks = {}
    all_ok = True

    # 1. SQLite 连通性检查
    try:
        cursor = await store_group.conn.execute("SELECT 1")
        await cursor.fetchone()
        checks["sqlite"] = "ok"
    except Exception as e:
        log.warning("ready_check_failed", check="sqlite", error=str(e))
        checks["sqlite"] = f"error: {str(e)}"
        all_ok = False

    # 2. 数据目录检查
    data_dir = Path(get_db_path()).parent
    if data_dir.exists() and data_dir.is_dir():
        checks["data_dir"] = "ok"
    else:
        checks["data_dir"] = "error: directory does not exist"
        all_ok = False

    # 3. 磁盘空间检查
    try:
        disk_usage = shutil.disk_usage(data_dir if data_dir.exists() else "/")
        checks["disk_space_mb"] = disk_usage.free // (1024 * 1024)
    except OSError:
        checks["disk_space_mb"] = 0
        all_ok = False

    # 4. 调度器负载
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is not None:
        checks["scheduler"] = {
            "running": scheduler.running_count,
            "waiting": scheduler.waiting_count,
        }
    else:
        checks["scheduler"] = "error: not initialized"
        all_ok = False

    status_code = 200 if all_ok else 503
    status_text = "ready" if all_ok else "not_ready"

    return JSONResponse(
        status_code=status_code,
        content={"status": status_text, "checks": checks},
    )
