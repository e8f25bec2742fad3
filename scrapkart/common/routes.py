from fastapi import APIRouter, Depends, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from scrapkart.common.retries import retry_with_db_circuit
from scrapkart.common.utils import success_response
from scrapkart.db.dependencies import get_session

home_router = APIRouter()


@retry_with_db_circuit(attempts=2)
async def _ping(session: AsyncSession) -> None:
    await session.execute(text("SELECT 1"))


@home_router.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    await _ping(session)
    return success_response({"db": "ok"}, status_code=status.HTTP_200_OK)
