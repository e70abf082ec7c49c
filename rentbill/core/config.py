# rentbill/core/config.py
import os
from decimal import Decimal
from typing import List
from urllib.parse import quote_plus

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Rental Billing Engine")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    TIMEZONE: str = os.getenv("TIMEZONE", "Asia/Kolkata")

    # ---------- MySQL ----------
    MYSQL_HOST: str = os.getenv("MYSQL_HOST", "localhost")
    MYSQL_PORT: int = int(os.getenv("MYSQL_PORT", "3306"))
    MYSQL_USER: str = os.getenv("MYSQL_USER", "rentbill")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "rentbill")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "pymysql")

    # DATABASE_URL wins over the MYSQL_* pieces (sqlite/postgres deployments, CI)
    SQLALCHEMY_DATABASE_URI: str = os.getenv("DATABASE_URL") or (
        f"mysql+{DB_DRIVER}://{quote_plus(MYSQL_USER)}:{quote_plus(MYSQL_PASSWORD)}"
        f"@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}")

    # ---------- Security (identity provider tokens) ----------
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-this")
    JWT_ALG: str = os.getenv("JWT_ALG", "HS256")

    # ---------- Invoice creation ----------
    INVOICE_CREATE_MAX_ATTEMPTS: int = int(
        os.getenv("INVOICE_CREATE_MAX_ATTEMPTS", "3"))
    INVOICE_CREATE_BACKOFF_MS: int = int(
        os.getenv("INVOICE_CREATE_BACKOFF_MS", "400"))
    # outlet_fy | outlet_short
    INVOICE_NUMBER_FORMAT: str = os.getenv("INVOICE_NUMBER_FORMAT",
                                           "outlet_fy")
    # numbering continues after this value for a brand-new counter row
    INVOICE_SEQUENCE_FLOOR: int = int(os.getenv("INVOICE_SEQUENCE_FLOOR",
                                                "0"))
    INVOICE_ALLOW_FALLBACK_NUMBER: bool = _flag(
        "INVOICE_ALLOW_FALLBACK_NUMBER", "true")
    # flag | block
    INVOICE_FAILURE_POLICY: str = os.getenv("INVOICE_FAILURE_POLICY",
                                            "flag").lower()
    INVOICE_PAYMENT_TERMS_DAYS: int = int(
        os.getenv("INVOICE_PAYMENT_TERMS_DAYS", "15"))
    DEFAULT_HSN_CODE: str = os.getenv("DEFAULT_HSN_CODE", "9985")
    AUDIT_ERROR_MAX_LEN: int = int(os.getenv("AUDIT_ERROR_MAX_LEN", "200"))

    # ---------- Payments ----------
    PAYMENT_OVERPAY_TOLERANCE: Decimal = Decimal(
        os.getenv("PAYMENT_OVERPAY_TOLERANCE", "1.00"))


settings = Settings()
