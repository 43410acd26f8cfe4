"""
应用配置模块

使用 Pydantic Settings 管理所有环境变量和配置。
配置从项目根目录的 .env 文件读取，支持类型验证和默认值。

分组：
- 基础：项目名、API 前缀、JWT 密钥、运行环境
- 存储：PostgreSQL、Redis
- Stripe：API 密钥、Webhook 签名密钥、结账会话参数
- 后台任务：待支付订阅的清理周期
"""
import secrets
import warnings
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    HttpUrl,
    PostgresDsn,
    computed_field,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self


def parse_cors(v: Any) -> list[str] | str:
    """
    解析 CORS 配置值

    支持逗号分隔的字符串或列表两种格式。
    """
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    """
    应用配置类

    配置来源优先级：环境变量 > .env 文件 > 代码默认值。
    """
    model_config = SettingsConfigDict(
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = secrets.token_urlsafe(32)  # JWT 验签密钥
    ACCESS_TOKEN_EXPIRE_DAYS: int = 7
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    PROJECT_NAME: str
    SENTRY_DSN: HttpUrl | None = None

    # Snowflake
    SNOWFLAKE_NODE_ID: int = 0

    POSTGRES_SERVER: str
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> PostgresDsn:
        return PostgresDsn.build(
            scheme="postgresql+psycopg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # Redis（清理任务的分布式锁）
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None

    # Stripe 支付配置
    STRIPE_SECRET_KEY: str | None = None  # 服务端 API 密钥（sk_...）
    STRIPE_PUBLISHABLE_KEY: str | None = None  # 前端公钥（pk_...）
    STRIPE_WEBHOOK_SECRET: str | None = None  # Webhook 签名密钥（whsec_...）
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300  # 签名时间戳容忍窗口
    STRIPE_CURRENCY: str = "usd"
    STRIPE_API_MAX_ATTEMPTS: int = 3  # 网络错误时的最大尝试次数

    # 结账跳转地址
    FRONTEND_URL: str = "http://localhost:3000"
    # Stripe 要求结账会话有效期在 30 分钟到 24 小时之间
    CHECKOUT_SESSION_TTL_MINUTES: int = 60

    # 待支付（PENDING）订阅的保留与清理
    PENDING_CHECKOUT_RETENTION_HOURS: int = 24
    PENDING_SWEEP_INTERVAL_MINUTES: int = 30

    @computed_field  # type: ignore[prop-decorator]
    @property
    def checkout_success_url(self) -> str:
        return f"{self.FRONTEND_URL.rstrip('/')}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.FRONTEND_URL.rstrip('/')}/subscription/cancelled"

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        检查敏感配置是否使用了默认值 "changethis"

        本地环境只发出警告，其他环境直接报错。
        """
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("SECRET_KEY", self.SECRET_KEY)
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        self._check_default_secret("STRIPE_WEBHOOK_SECRET", self.STRIPE_WEBHOOK_SECRET)

        if not (30 <= self.CHECKOUT_SESSION_TTL_MINUTES <= 24 * 60):
            raise ValueError("CHECKOUT_SESSION_TTL_MINUTES must be in [30, 1440]")

        return self


settings = Settings()  # type: ignore
