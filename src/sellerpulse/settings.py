from datetime import date
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    logs_dir: Path = Path("logs")

    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "qwen2.5:32b-instruct"
    request_timeout_seconds: float = 120.0
    health_timeout_seconds: float = 5.0

    cors_origins: str = "*"

    # Anchors relative date filters ("last month"); None means today.
    reference_date: date | None = None

    system_prompt: str = (
        "You are an Amazon Business Analyst AI assistant. You help users analyze "
        "their Amazon Seller Central data through natural conversation.\n\n"
        "Today's Date: {today}\n\n"
        "Your Capabilities:\n"
        "- Access real-time sales, order, inventory and advertising data through the provided tools\n"
        "- Generate insights, trends, and recommendations\n"
        "- Answer questions about business performance\n\n"
        "Date Filter Guidelines:\n"
        "When users mention:\n"
        '- "current month" or "this month" -> use filterType: "currentmonth"\n'
        '- "previous month" or "last month" -> use filterType: "previousmonth"\n'
        '- "current year" or "this year" -> use filterType: "currentyear"\n'
        '- "last year" -> use filterType: "lastyear"\n\n'
        "Response Format:\n"
        "1. Start with a brief one sentence summary\n"
        "2. Present data clearly using Markdown tables\n"
        "3. Highlight key trends, patterns and anomalies\n"
        "4. Give actionable recommendations when appropriate\n\n"
        "Be professional but conversational, clear and data-driven."
    )
    start_message: str = "Analyzing your Amazon data..."
    thinking_message: str = "Generating insights..."

    data_dir: Path = Path("data/tenants")
    seed_demo_tenant: str | None = None

    session_max_age_days: int = 30
    session_cleanup_interval_seconds: int = 3600

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    def today(self) -> date:
        """Return the reference date used for relative date filters."""
        return self.reference_date or date.today()

    def render_system_prompt(self) -> str:
        return self.system_prompt.replace("{today}", self.today().isoformat())


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
