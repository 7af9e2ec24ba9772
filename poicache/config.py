from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    cache_ttl_millis: int = 24 * 60 * 60 * 1000
    key_precision: int = 4
    store_backend: str = "memory"
    store_maxsize: int = 1024
    store_path: str = ".poicache"
    source_url: str = "http://localhost:8000"
    source_timeout: float = 15.0
    source_api_key: str = ""
    log_format: str = "text"
    log_level: str = "INFO"

    model_config = {
        "env_prefix": "POICACHE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


settings = Settings()
