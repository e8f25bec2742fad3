from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from scrapkart.config.settings import config_settings
from scrapkart.db.utils import _normalize_db_url, configure_sqlite_engine, is_sqlite_url

DATABASE_URL = _normalize_db_url(config_settings.DATABASE_URL)

if is_sqlite_url(DATABASE_URL):
    async_engine = create_async_engine(DATABASE_URL, echo=config_settings.DB_ECHO, connect_args={"timeout": 30})
    configure_sqlite_engine(async_engine)
else:
    async_engine = create_async_engine(DATABASE_URL, echo=config_settings.DB_ECHO, pool_pre_ping=True)

async_session = async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)
