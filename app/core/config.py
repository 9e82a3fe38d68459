import logging
from typing import List

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Application Information
    app_name: str = Field(default="Quiz Arena")
    app_description: str = Field(default="Quiz attempts and friend challenges")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=True)
    production: bool = Field(default=False)
    timezone: str = Field(default="UTC")

    # Database Configuration
    db_connection: str = Field(default="postgresql")
    db_host: str = Field(default="127.0.0.1")
    db_port: int = Field(default=5432)
    db_database: str = Field(default="quiz-arena")
    db_username: str = Field(default="home")
    db_password: str = Field(default="123")

    # Security Settings
    cors_allowed_origins: List[str] = Field(default=["http://localhost:3000"])
    rate_limit_storage: str = Field(default="memory://")
    rate_limit_default: str = Field(default="120/minute")

    # JWT Configuration
    jwt_secret: str = Field(default="your-secret-key-change-in-production")
    jwt_algorithm: str = Field(default="HS256")
    jwt_user_expiration: int = Field(default=7)
    jwt_issuer: str = Field(default="Quiz Arena")

    # Logging
    log_level: str = Field(default="info")
    log_file: str = Field(default="logs/app.log")

    # AI Service
    ai_api_key: str = Field(default="")
    ai_api_endpoint: str = Field(default="")
    ai_model: str = Field(default="")
    ai_generation_timeout: float = Field(default=120.0)
    ai_evaluation_timeout: float = Field(default=45.0)

    # Quiz sizing (objective + subjective per quiz type)
    lesson_quiz_objective_count: int = Field(default=3, ge=0)
    lesson_quiz_subjective_count: int = Field(default=0, ge=0)
    module_quiz_objective_count: int = Field(default=7, ge=0)
    module_quiz_subjective_count: int = Field(default=1, ge=0)
    course_quiz_objective_count: int = Field(default=18, ge=0)
    course_quiz_subjective_count: int = Field(default=2, ge=0)

    # Challenges
    challenge_accept_hours: int = Field(default=48, ge=1)
    challenge_completion_hours: int = Field(default=24, ge=1)
    challenge_time_tiebreak: bool = Field(default=False)
    challenge_sweep_enabled: bool = Field(default=True)
    challenge_sweep_minutes: int = Field(default=5, ge=1)

    # ============================
    # Generic comma-separated parser
    # ============================
    @staticmethod
    def _parse_csv(value, default):
        if isinstance(value, str):
            items = [x.strip() for x in value.split(",") if x.strip()]
            return items if items else default
        if isinstance(value, list):
            return value
        return default

    @field_validator("cors_allowed_origins", mode="before")
    def validate_cors(cls, v):
        return cls._parse_csv(v, ["http://localhost:3000"])

    @property
    def database_url(self) -> str:
        if self.db_connection == "sqlite":
            return f"sqlite:///{self.db_database}"
        return (
            "postgresql+psycopg2://{user}:{password}@{host}:{port}/{database}".format(
                user=self.db_username,
                password=self.db_password,
                host=self.db_host,
                port=self.db_port,
                database=self.db_database,
            )
        )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
    }


def load_settings():
    try:
        settings = Settings()
        logger.info("✅ Settings loaded successfully!")
        return settings
    except ValidationError as e:
        logger.error(f"❌ Validation Error: {e}")
        raise


settings = load_settings()
