import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # 数据库配置
    POSTGRES_USER: str = os.getenv("POSTGRES_USER", "postgres")
    POSTGRES_PASSWORD: str = os.getenv("POSTGRES_PASSWORD", "123456")
    POSTGRES_HOST: str = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_DB: str = os.getenv("POSTGRES_DB", "rental")
    
    # Redis 配置
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_DB: int = int(os.getenv("REDIS_DB", "0"))

    # 预占（Hold）配置
    HOLD_DURATION_MINUTES: int = 10
    MAX_HOLD_EXTENSION_MINUTES: int = 30
    HOLD_SWEEP_INTERVAL_SECONDS: int = 300
    SWEEP_BATCH_SIZE: int = 500

    # 分布式锁配置（按 product+location 加锁）
    LOCK_TTL_MS: int = 10000
    LOCK_MAX_ATTEMPTS: int = 5
    LOCK_RETRY_BASE_MS: int = 50

    # 可用量缓存，仅作参考，写操作总是重新计算
    AVAILABILITY_CACHE_TTL_SECONDS: int = 30

    # overdue 订单是否占用库存，默认与原系统一致（不占用）
    OVERDUE_OCCUPIES_CAPACITY: bool = False

    EVENT_CHANNEL_PREFIX: str = ""
    STAFF_ROLES: str = "staff,manager,admin,super_admin"
    LOG_LEVEL: str = "INFO"

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+psycopg://"
            f"{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )

    @property
    def staff_roles(self) -> set:
        return {role.strip() for role in self.STAFF_ROLES.split(",") if role.strip()}

settings = Settings()
