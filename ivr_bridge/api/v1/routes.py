"""
API Router
Combines all endpoint routers
"""
from fastapi import APIRouter

from ivr_bridge.api.v1.endpoints import agent_ws, calls, queue, webhooks

api_router = APIRouter()

api_router.include_router(webhooks.router)
api_router.include_router(queue.router)
api_router.include_router(calls.router)
api_router.include_router(agent_ws.router)
