"""
数据库引擎配置和管理
使用SQLAlchemy异步引擎连接SQLite数据库
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from radar.datastore.models import Base
from radar.settings import global_settings

# 全局数据库引擎实例
engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


async def create_session_factory(
    url: str, echo: bool = False
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """创建引擎和会话工厂，并建表"""
    new_engine = create_async_engine(url, echo=echo, future=True)
    factory = async_sessionmaker(
        bind=new_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with new_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return new_engine, factory


async def init_db(url: str | None = None) -> None:
    """初始化数据库连接和表结构"""
    global engine, AsyncSessionLocal

    engine, AsyncSessionLocal = await create_session_factory(
        url or global_settings.database_url,
        echo=global_settings.database_echo,
    )


async def close_db() -> None:
    """关闭数据库连接"""
    global engine, AsyncSessionLocal
    if engine:
        await engine.dispose()
    engine = None
    AsyncSessionLocal = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """获取会话工厂（用于流水线等需要直接创建会话的场景）"""
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return AsyncSessionLocal
