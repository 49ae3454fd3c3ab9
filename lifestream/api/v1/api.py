from fastapi import APIRouter
from lifestream.api.v1.endpoints import chat, requests, users

api_router = APIRouter()

api_router.include_router(requests.router, prefix="/requests", tags=["requests"])
api_router.include_router(chat.router, prefix="/chat", tags=["chat"])
api_router.include_router(users.router, prefix="/users", tags=["users"])
