# app/core/config.py
import os
from decimal import Decimal
from typing import List
from pydantic import BaseModel
from dotenv import load_dotenv
from urllib.parse import quote_plus

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Hospital Ledger")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    # ---------- MySQL ----------
    MYSQL_HOST: str = os.getenv("MYSQL_HOST", "localhost")
    MYSQL_PORT: int = int(os.getenv("MYSQL_PORT", "3306"))
    MYSQL_USER: str = os.getenv("MYSQL_USER", "ledger_user")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "hospital_ledger")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "pymysql")

    # Full URL wins over the MySQL parts (sqlite:///./ledger.db etc.)
    SQLALCHEMY_DATABASE_URI: str = os.getenv(
        "SQLALCHEMY_DATABASE_URI",
        f"mysql+{DB_DRIVER}://{quote_plus(MYSQL_USER)}:{quote_plus(MYSQL_PASSWORD)}"
        f"@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}",
    )

    # ---------- Security ----------
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-this")
    JWT_ALG: str = os.getenv("JWT_ALG", "HS256")

    # ---------- Billing ----------
    # flat VAT percentage, applied once when the invoice is created
    BILLING_TAX_RATE: Decimal = Decimal(os.getenv("BILLING_TAX_RATE", "16"))
    INVOICE_NUMBER_PREFIX: str = os.getenv("INVOICE_NUMBER_PREFIX", "INV-")
    PAYMENT_APPLY_MAX_RETRIES: int = int(
        os.getenv("PAYMENT_APPLY_MAX_RETRIES", "3"))

    # ---------- M-Pesa (Daraja) ----------
    MPESA_ENV: str = os.getenv("MPESA_ENV", "sandbox")
    MPESA_CONSUMER_KEY: str = os.getenv("MPESA_CONSUMER_KEY", "")
    MPESA_CONSUMER_SECRET: str = os.getenv("MPESA_CONSUMER_SECRET", "")
    MPESA_PASSKEY: str = os.getenv("MPESA_PASSKEY", "")
    MPESA_SHORTCODE: str = os.getenv("MPESA_SHORTCODE", "")
    MPESA_CALLBACK_URL: str = os.getenv("MPESA_CALLBACK_URL", "")
    MPESA_TIMEOUT_SECONDS: float = float(
        os.getenv("MPESA_TIMEOUT_SECONDS", "10"))
    MPESA_TOKEN_SAFETY_MARGIN_SECONDS: int = int(
        os.getenv("MPESA_TOKEN_SAFETY_MARGIN_SECONDS", "300"))
    MPESA_CALLBACK_ALLOWED_IPS: List[str] = _split_csv(
        os.getenv("MPESA_CALLBACK_ALLOWED_IPS", ""))
    MPESA_VALIDATE_BILL_REF: bool = _flag("MPESA_VALIDATE_BILL_REF")
    MPESA_PUSH_STALE_MINUTES: int = int(
        os.getenv("MPESA_PUSH_STALE_MINUTES", "5"))
    MPESA_DEFAULT_COUNTRY_CODE: str = os.getenv("MPESA_DEFAULT_COUNTRY_CODE",
                                                "254")

    @property
    def MPESA_BASE_URL(self) -> str:
        if self.MPESA_ENV == "production":
            return "https://api.safaricom.co.ke"
        return "https://sandbox.safaricom.co.ke"


settings = Settings()
