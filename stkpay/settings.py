from decimal import Decimal
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    minimum_amount: Decimal = Decimal("100")
    country_code: str = "254"
    phone_pattern: str = r"^254(7|1)\d{8}$"
    account_reference_prefix: str = "BERA"

    referral_reward: Decimal = Decimal("10")
    referral_code_length: int = 8

    stale_after_seconds: float = 60.0
    gateway_timeout_seconds: float = 30.0

    storage_retry_attempts: int = 3
    storage_retry_base_delay: float = 0.1
    unresolved_callback_attempts: int = 5
    unresolved_callback_delay: float = 0.5

    storage_backend: Literal["memory", "json"] = "memory"
    data_dir: str = "./data"

    daraja_base_url: str = "https://sandbox.safaricom.co.ke"
    daraja_consumer_key: str = ""
    daraja_consumer_secret: str = ""
    mpesa_shortcode: str = "174379"
    mpesa_passkey: str = ""
    callback_url: str = "http://localhost:8000/callback"

    public_base_url: str = "http://localhost:8000"
    payout_whatsapp_number: str = "254700000000"

    log_level: str = "INFO"


settings = Settings()
