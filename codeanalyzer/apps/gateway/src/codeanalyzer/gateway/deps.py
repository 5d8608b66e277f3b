"""依赖注入模块 -- 通过 FastAPI Depends 注入运行期组件

组件实例通过 app.state 管理，在 lifespan 中初始化/清理。
"""

from codeanalyzer.agent import AgentRegistry
from codeanalyzer.core.store import StoreGroup
from fastapi import Request

from .services.event_bus import EventBus
from .services.log_multiplexer import LogMultiplexer
from .services.scheduler import TaskScheduler


def get_store_group(request: Request) -> StoreGroup:
    """从 app.state 获取 StoreGroup 实例"""
    return request.app.state.store_group


def get_scheduler(request: Request) -> TaskScheduler:
    """从 app.state 获取 TaskScheduler 实例"""
    return request.app.state.scheduler


def get_event_bus(request: Request) -> EventBus:
    """从 app.state 获取 EventBus 实例"""
    return request.app.state.event_bus


def get_log_multiplexer(request: Request) -> LogMultiplexer:
    """从 app.state 获取 LogMultiplexer 实例"""
    return request.app.state.log_multiplexer


def get_agent_registry(request: Request) -> AgentRegistry:
    """从 app.state 获取 AgentRegistry 实例"""
    return request.app.state.agent_registry
