"""Root API router wiring."""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse


api_router = APIRouter()


@api_router.get("/hello", response_class=PlainTextResponse)
async def hello() -> str:
    """Smoke-test route."""

    return "Hello World!"
