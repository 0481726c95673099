"""过期预占清理本地执行脚本

    python -m app.jobs.expire_holds --batch-size 200 --dry-run
"""

import argparse
import logging

from app.core.config import settings
from app.core.redis import redis_client, redlock
from app.db.session import session_scope
from app.events.publisher import RedisEventPublisher
from app.services.availability_service import AvailabilityService

# 配置日志
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def run_sweep(batch_size: int = 500, dry_run: bool = False) -> int:
    """执行过期预占清理

    Args:
        batch_size: 批处理大小
        dry_run: 是否为试运行模式（只统计，不改状态）
    """
    with session_scope() as db:
        service = AvailabilityService(
            db,
            redis_client,
            redlock,
            publisher=RedisEventPublisher(redis_client, settings.EVENT_CHANNEL_PREFIX),
        )
        if dry_run:
            expired_count = service.count_expired_holds()
            logger.info(f"试运行模式：发现 {expired_count} 条过期预占待清理")
            return expired_count

        count = service.expire_holds(batch_size)
        logger.info(f"清理完成：共置为过期 {count} 条预占")
        return count

def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='过期预占清理工具')
    parser.add_argument(
        '--batch-size',
        type=int,
        default=settings.SWEEP_BATCH_SIZE,
        help=f'批处理大小 (默认: {settings.SWEEP_BATCH_SIZE})'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='试运行模式，只统计不执行清理'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='详细输出模式'
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        result = run_sweep(args.batch_size, args.dry_run)
        if args.dry_run:
            print(f"📊 试运行结果：发现 {result} 条过期预占")
        else:
            print(f"✅ 清理完成：处理了 {result} 条预占")
    except Exception as e:
        print(f"❌ 执行失败: {str(e)}")
        return 1

    return 0

if __name__ == "__main__":
    exit(main())
