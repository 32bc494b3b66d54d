from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./claimhub.db")


def make_engine(url: str):
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(url, echo=False, pool_pre_ping=True)


def make_sessionmaker(bind):
    return sessionmaker(bind, expire_on_commit=False, class_=AsyncSession)


engine = make_engine(DATABASE_URL)
SessionLocal = make_sessionmaker(engine)

class Base(DeclarativeBase):
    pass

async def create_all(bind=engine):
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
