import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./therapy.db")
SQL_ECHO = _get_bool(os.getenv("SQL_ECHO"), default=False)

APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
CORS_ORIGINS = _get_list(os.getenv("CORS_ORIGINS"), default=[APP_URL])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))
ACCESS_TOKEN_COOKIE = os.getenv("ACCESS_TOKEN_COOKIE", "access_token")

# PayHere hosted checkout
PAYHERE_MERCHANT_ID = os.getenv("PAYHERE_MERCHANT_ID", "")
PAYHERE_MERCHANT_SECRET = os.getenv("PAYHERE_MERCHANT_SECRET", "")
PAYHERE_MODE = os.getenv("PAYHERE_MODE", "sandbox")
PAYHERE_CURRENCY = os.getenv("PAYHERE_CURRENCY", "LKR")
PAYHERE_DEFAULT_CITY = os.getenv("PAYHERE_DEFAULT_CITY", "Colombo")
PAYHERE_DEFAULT_COUNTRY = os.getenv("PAYHERE_DEFAULT_COUNTRY", "Sri Lanka")

# Google Calendar / Meet
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
GOOGLE_TOKEN_URI = os.getenv("GOOGLE_TOKEN_URI", "https://oauth2.googleapis.com/token")
MEETING_TIMEZONE = os.getenv("MEETING_TIMEZONE", "Asia/Colombo")

SESSION_DURATION_MINUTES = int(os.getenv("SESSION_DURATION_MINUTES", "45"))


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
