"""Agent 路由

GET /api/agents: 列出已注册的 agent 及其可用性。
"""

from fastapi import APIRouter, Depends, Query

from ..deps import get_agent_registry

router = APIRouter()


@router.get("/api/agents")
async def list_agents(
    detect: bool = Query(default=True, description="是否探测 agent 可用性"),
    registry=Depends(get_agent_registry),
):
    """列出 agent；detect=false 时跳过可用性探测"""
    available = await registry.detect_available() if detect else {}
    agents = [
        {**info, "available": available.get(info["id"])}
        for info in registry.describe()
    ]
    return {"default_agent": registry.default_agent, "agents": agents}
