from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_name: str = "Restaurant Intelligence"
    debug: bool = False
    api_prefix: str = "/api/v1"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Storage (memory | sql)
    repository_backend: str = "memory"
    database_url: str = "postgresql+asyncpg://ri:ri@localhost:5432/restaurant_intel"
    database_echo: bool = False

    # Fetcher
    fetch_timeout_seconds: float = 30.0
    fetch_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    fetch_max_images: int = 10
    fetch_max_menu_items: int = 20

    # Field extraction
    default_country: str = "India"
    default_cuisine_tag: str = "Indian"
    web_scraping_reliability: float = 0.8

    # Synthesis (provider: google | anthropic | openai | offline)
    synthesis_provider: str = "google"
    synthesis_model: str = ""  # auto-defaults per provider if empty
    synthesis_timeout_seconds: float = 30.0
    synthesis_temperature: float = 0.3
    synthesis_max_output_tokens: int = 2048
    google_ai_api_key: str = ""
    anthropic_api_key: str = ""
    openai_api_key: str = ""

    # Pipeline
    completeness_threshold: float = 80.0
    max_concurrent_jobs: int = 1
    demo_source_urls: list[str] = [
        "https://example-restaurant1.com",
        "https://example-restaurant2.com",
        "https://example-restaurant3.com",
    ]

    # CORS
    cors_origins: list[str] = ["http://localhost:3000"]

    @property
    def synthesis_api_key(self) -> str:
        return {
            "google": self.google_ai_api_key,
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
        }.get(self.synthesis_provider, "")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
