# clinic_billing/core/config.py
import os
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
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Clinic Billing API")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(
        os.getenv(
            "CORS_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000",
        ))

    # ---------- MySQL ----------
    MYSQL_HOST: str = os.getenv("MYSQL_HOST", "localhost")
    MYSQL_PORT: int = int(os.getenv("MYSQL_PORT", "3306"))
    MYSQL_USER: str = os.getenv("MYSQL_USER", "clinic_user")
    MYSQL_PASSWORD: str = os.getenv("MYSQL_PASSWORD", "")
    MYSQL_DB: str = os.getenv("MYSQL_DB", "clinic_billing")
    DB_DRIVER: str = os.getenv("DB_DRIVER", "pymysql")
    DB_ECHO: bool = _flag("DB_ECHO")

    # DATABASE_URL wins over the MySQL parts (sqlite for local runs / tests)
    SQLALCHEMY_DATABASE_URI: str = os.getenv(
        "DATABASE_URL",
        f"mysql+{DB_DRIVER}://{quote_plus(MYSQL_USER)}:{quote_plus(MYSQL_PASSWORD)}"
        f"@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}?charset=utf8mb4",
    )

    # ---------- Security ----------
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-this")
    JWT_ALG: str = os.getenv("JWT_ALG", "HS256")
    # roles allowed to touch billing endpoints
    BILLING_ROLES: List[str] = [
        r.upper() for r in _split_csv(os.getenv("BILLING_ROLES", "ADMIN,BILLING"))
    ]

    # ---------- Invoice numbering ----------
    INVOICE_NUMBER_PREFIX: str = os.getenv("INVOICE_NUMBER_PREFIX", "INV-")
    INVOICE_NUMBER_PADDING: int = int(os.getenv("INVOICE_NUMBER_PADDING", "8"))
    INVOICE_NUMBER_ATTEMPTS: int = int(
        os.getenv("INVOICE_NUMBER_ATTEMPTS", "5"))

    # ---------- Ledger ----------
    PAYMENT_RETRY_ATTEMPTS: int = int(os.getenv("PAYMENT_RETRY_ATTEMPTS", "3"))

    # ---------- Coverage read cache ----------
    COVERAGE_CACHE_ENABLED: bool = _flag("COVERAGE_CACHE_ENABLED", "true")
    COVERAGE_CACHE_TTL_SECONDS: float = float(
        os.getenv("COVERAGE_CACHE_TTL_SECONDS", "300"))
    COVERAGE_CACHE_MAX_ENTRIES: int = int(
        os.getenv("COVERAGE_CACHE_MAX_ENTRIES", "1000"))


settings = Settings()
