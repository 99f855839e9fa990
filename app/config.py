import os


class Settings:
    SECRET_KEY: str = os.getenv("SECRET_KEY", "blogsphere-dev-secret-key")
    ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

    # "memory" keeps everything in process; "sql" uses DATABASE_URL
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "memory")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./blogsphere.db")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    DEFAULT_PAGE_SIZE: int = int(os.getenv("DEFAULT_PAGE_SIZE", 10))
    SUGGESTED_AUTHORS_LIMIT: int = int(os.getenv("SUGGESTED_AUTHORS_LIMIT", 5))
    MESSAGE_PAGE_SIZE: int = int(os.getenv("MESSAGE_PAGE_SIZE", 50))
    TRENDING_TAGS_LIMIT: int = 10

settings = Settings()
