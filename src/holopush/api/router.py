from fastapi import APIRouter

from holopush.api import push

api_router = APIRouter()
api_router.include_router(push.router, tags=["push"])
