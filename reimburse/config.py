from pydantic import BaseModel
from dotenv import load_dotenv
import os

load_dotenv()

class Settings(BaseModel):
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./reimburse.db")

    JWT_SECRET: str = os.getenv("JWT_SECRET", "change-me-in-production-please")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

    EXCHANGE_RATE_API_URL: str = os.getenv("EXCHANGE_RATE_API_URL", "https://api.exchangerate-api.com/v4/latest")
    COUNTRIES_API_URL: str = os.getenv("COUNTRIES_API_URL", "https://restcountries.com/v3.1/all?fields=name,currencies,cca2")
    RATE_CACHE_TTL_SECONDS: int = int(os.getenv("RATE_CACHE_TTL_SECONDS", "3600"))
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))
    DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "USD")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

settings = Settings()
