from typing import Optional
from pydantic_settings import BaseSettings
from urllib.parse import quote_plus

class Settings(BaseSettings):
    postgres_user: str = "postgres"
    postgres_password: str = ""
    postgres_db: str = "orders"
    postgres_host: str = "localhost"
    postgres_port: str = "5432"

    # full URL wins over the postgres_* parts (sqlite in tests)
    DATABASE_URL: Optional[str] = None

    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    ENV: str = "production"

    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""
    CURRENCY: str = "INR"

    FRONTEND_URL: str = "http://localhost:3000"

    R2_ACCOUNT_ID: str = ""
    R2_ACCESS_KEY_ID: str = ""
    R2_SECRET_ACCESS_KEY: str = ""
    R2_BUCKET_NAME: str = "invoices"
    R2_PUBLIC_BASE: Optional[str] = None

    INVOICE_TEMPLATE_PATH: Optional[str] = None

    PENDING_ORDER_TTL_HOURS: int = 24
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 900
    ENABLE_EXPIRY_SWEEPER: bool = False

    @property
    def database_url(self):
        if self.DATABASE_URL:
            return self.DATABASE_URL
        encoded_password = quote_plus(self.postgres_password)
        return (
            f"postgresql+psycopg2://{self.postgres_user}:"
            f"{encoded_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "allow"

settings = Settings()
