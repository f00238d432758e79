"""
Request ID 中间件
生成或透传追踪ID，并绑定到 structlog 上下文
"""
import uuid
from contextvars import ContextVar
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """从 X-Request-ID 读取或生成 request_id，并回写到响应头。

    同时把客户端 IP 与操作者（X-Actor-Id）绑定到日志上下文，
    订单审计日志里的 performed_by 与访问日志可以据此关联。
    """

    HEADER_NAME = "X-Request-ID"
    ACTOR_HEADER = "X-Actor-Id"

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME) or str(uuid.uuid4())
        client_ip = client_ip_of(request)

        request.state.request_id = request_id
        request.state.client_ip = client_ip
        request_id_var.set(request_id)

        structlog.contextvars.clear_contextvars()
        context = {"request_id": request_id, "client_ip": client_ip}
        actor = request.headers.get(self.ACTOR_HEADER)
        if actor:
            context["actor_id"] = actor
        structlog.contextvars.bind_contextvars(**context)

        response = await call_next(request)
        response.headers[self.HEADER_NAME] = request_id
        return response


def client_ip_of(request: Request) -> str:
    """优先取代理头中的原始客户端IP"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    return request.client.host if request.client else "unknown"


def get_request_id() -> Optional[str]:
    """当前请求的 request_id；不在请求上下文中时返回 None"""
    return request_id_var.get()
