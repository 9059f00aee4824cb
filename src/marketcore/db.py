from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from marketcore.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.DB_ECHO,
    future=True
)

AsyncSessionLocal = sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()

def make_session_factory(bind) -> sessionmaker:
    return sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)
