from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Union, Optional


class Settings(BaseSettings):

    MONGO_URI: str = Field(default="mongodb://localhost:27017")
    MONGO_DB: str = Field(default="tradejournal")

    JWT_SECRET: str = Field(default="dev-change-me")
    JWT_ALG: str = Field(default="HS256")
    ACCESS_TOKEN_TTL_MIN: int = Field(default=60)
    ACCESS_COOKIE_NAME: str = Field(default="access_token")

    # external classification / insight services; unset means "unavailable"
    COLUMN_MAPPING_URL: Optional[str] = None
    CSV_VALIDATION_URL: Optional[str] = None
    INSIGHTS_URL: Optional[str] = None
    SERVICE_API_KEY: Optional[str] = None
    SERVICE_TIMEOUT_SEC: int = Field(default=20)

    SERVICE_SAMPLE_ROWS: int = Field(default=5)
    INSIGHTS_MAX_TRADES: int = Field(default=100)
    ROW_ERROR_PREVIEW: int = Field(default=10)
    PROFIT_FACTOR_SENTINEL: float = Field(default=9999.0)
    EARLIEST_TRADE_DATE: str = Field(default="2000-01-01")

    LOG_LEVEL: str = Field(default="INFO")

    CORS_ORIGINS: Union[List[str], str] = (
        "http://localhost:5173,http://127.0.0.1:5173"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> List[str]:
        if isinstance(self.CORS_ORIGINS, list):
            return self.CORS_ORIGINS
        return [x.strip() for x in self.CORS_ORIGINS.split(",") if x.strip()]


settings = Settings()
