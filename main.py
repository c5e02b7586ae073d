"""
XRadar主入口
启动信号检测流水线：数据库、状态恢复、定时tick
"""

import asyncio
import sys

from loguru import logger

from radar.datasource.base import QueueAdapter
from radar.datastore.engine import close_db, get_session_factory, init_db
from radar.datastore.repositories import SqlKeyValueStore
from radar.services.pipeline import SignalPipeline
from radar.services.scheduler import TickScheduler
from radar.services.sink import LogSink
from radar.settings import global_settings


async def main() -> None:
    """主函数"""
    logger.remove()
    logger.add(sys.stderr, level=global_settings.log_level.upper())
    logger.info("Starting XRadar...")

    scheduler: TickScheduler | None = None
    pipeline: SignalPipeline | None = None
    try:
        # 初始化数据库
        logger.info("Initializing database...")
        await init_db()
        logger.info("Database initialized successfully")

        config = global_settings.load_radar_config()
        pipeline = SignalPipeline(
            config,
            store=SqlKeyValueStore(get_session_factory()),
            sinks=[LogSink()],
            adapters=[QueueAdapter()],
            write_timeout=global_settings.store_write_timeout,
            snapshot_every=global_settings.snapshot_every_ticks,
        )

        # 恢复上次的事件和基线
        await pipeline.restore()

        scheduler = TickScheduler(pipeline, global_settings.tick_interval_seconds)
        scheduler.start()
        await scheduler.refresh_now()

        # 保持程序运行
        logger.info("XRadar is running. Press Ctrl+C to stop.")
        while True:
            await asyncio.sleep(60)

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    except Exception as e:
        logger.error(f"Error in main loop: {e}")
    finally:
        if scheduler is not None:
            logger.info("Stopping tick scheduler...")
            scheduler.stop()
        if pipeline is not None:
            await pipeline.close()

        logger.info("Closing database connections...")
        await close_db()

        logger.info("XRadar stopped")


if __name__ == "__main__":
    asyncio.run(main())
