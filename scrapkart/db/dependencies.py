from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession
from scrapkart.db.connection import async_session


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:  # connection is checked out on first execute and returned at block exit
        yield session


def get_session_factory():
    return async_session
