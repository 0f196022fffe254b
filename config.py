import os
from typing import List, Optional

from fastapi import Request
from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Process-wide configuration, built once at startup and passed to handlers."""

    environment: str = "development"
    port: int = 5000

    mongo_uri: str = "mongodb://localhost:27017/beverage_ecommerce"
    database_name: str = "beverage_ecommerce"
    mongo_connect_max_attempts: int = Field(5, ge=1)
    mongo_retry_interval: float = 10.0

    jwt_secret: str = "devsecret"
    jwt_algorithm: str = "HS256"
    jwt_expires_days: int = 7

    frontend_url: Optional[str] = None

    mpesa_consumer_key: Optional[str] = None
    mpesa_consumer_secret: Optional[str] = None
    mpesa_shortcode: Optional[str] = None
    mpesa_passkey: Optional[str] = None
    mpesa_callback_url: Optional[str] = None
    mpesa_environment: str = "sandbox"

    demo_name: str = "Demo User"
    demo_email: str = "demo@beverageshop.co.ke"
    demo_phone: str = "254700000000"
    demo_password: str = "demopassword"
    prev_demo_email: Optional[str] = None
    force_seed: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            environment=os.getenv("APP_ENV") or os.getenv("NODE_ENV", "development"),
            port=int(os.getenv("PORT", 5000)),
            mongo_uri=os.getenv("MONGO_URI", "mongodb://localhost:27017/beverage_ecommerce"),
            database_name=os.getenv("DATABASE_NAME", "beverage_ecommerce"),
            mongo_connect_max_attempts=int(os.getenv("MONGO_CONNECT_MAX_ATTEMPTS", "5")),
            mongo_retry_interval=float(os.getenv("MONGO_RETRY_INTERVAL", "10")),
            jwt_secret=os.getenv("JWT_SECRET", "devsecret"),
            frontend_url=os.getenv("FRONTEND_URL"),
            mpesa_consumer_key=os.getenv("MPESA_CONSUMER_KEY"),
            mpesa_consumer_secret=os.getenv("MPESA_CONSUMER_SECRET"),
            mpesa_shortcode=os.getenv("MPESA_SHORTCODE"),
            mpesa_passkey=os.getenv("MPESA_PASSKEY"),
            mpesa_callback_url=os.getenv("MPESA_CALLBACK_URL"),
            mpesa_environment=os.getenv("MPESA_ENVIRONMENT", "sandbox"),
            demo_name=os.getenv("DEMO_NAME", "Demo User"),
            demo_email=os.getenv("DEMO_EMAIL", "demo@beverageshop.co.ke"),
            demo_phone=os.getenv("DEMO_PHONE", "254700000000"),
            demo_password=os.getenv("DEMO_PASSWORD", "demopassword"),
            prev_demo_email=os.getenv("PREV_DEMO_EMAIL"),
            force_seed=_env_bool("FORCE_SEED"),
        )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cors_origins(self) -> List[str]:
        if self.is_production:
            return [self.frontend_url or "http://localhost:3000"]
        return ["http://localhost:3000", "http://127.0.0.1:3000"]

    def missing_recommended(self) -> List[str]:
        names = {
            "MPESA_CONSUMER_KEY": self.mpesa_consumer_key,
            "MPESA_CONSUMER_SECRET": self.mpesa_consumer_secret,
            "MPESA_SHORTCODE": self.mpesa_shortcode,
            "MPESA_PASSKEY": self.mpesa_passkey,
            "MPESA_CALLBACK_URL": self.mpesa_callback_url,
        }
        return [name for name, value in names.items() if not value]


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
