from pydantic_settings import BaseSettings
from typing import Any, List
from pathlib import Path


PACKAGE_DIR = Path(__file__).resolve().parent.parent


def parse_csv_list(v: Any) -> List[str]:
    """Parse a list setting from a comma-separated string or list"""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        return [item.strip() for item in v.split(',') if item.strip()]
    return []


class Settings(BaseSettings):
    """Engine settings - all configurable via environment variables"""

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "buildloop"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""  # Empty disables the rotating file handler

    # ==========================================
    # Workspace
    # ==========================================
    PROJECTS_PATH: str = "projects"
    TEMPLATES_PATH: str = str(PACKAGE_DIR / "templates")
    TEMPLATE_EXCLUDES: str = ".next,node_modules,.turbo,dist"
    DEFAULT_FRAMEWORK: str = "nextjs"

    # Shell commands issued by the model
    COMMAND_TIMEOUT: int = 120  # seconds
    COMMAND_RATE_LIMIT: int = 30  # commands per window per session
    COMMAND_RATE_WINDOW: int = 60  # seconds

    # ==========================================
    # Preview process pool
    # ==========================================
    PREVIEW_HOST: str = "0.0.0.0"
    PREVIEW_BASE_PORT: int = 5173
    PREVIEW_PORT_WINDOW: int = 100
    PREVIEW_MAX_SERVERS: int = 5
    PREVIEW_READY_TIMEOUT: float = 30.0  # seconds without a ready line before assuming running
    PREVIEW_STOP_GRACE: float = 5.0  # seconds between SIGTERM and SIGKILL
    PREVIEW_IDLE_TIMEOUT_MINUTES: int = 30
    PREVIEW_SWEEP_INTERVAL_MINUTES: int = 5
    PREVIEW_INSTALL_TIMEOUT: int = 120
    INSTALL_COMMAND: str = "pnpm install"

    # ==========================================
    # Build & diagnostics
    # ==========================================
    BUILD_COMMAND: str = "pnpm build"
    BUILD_TIMEOUT: int = 60
    BUILD_BLOCK_MAX_LINES: int = 15
    BUILD_BLOCK_MIN_LINES: int = 4
    RUNTIME_LOG_LIMIT: int = 50
    BACKGROUND_VERIFY_DELAY: float = 2.0
    VERIFY_MAX_FILES: int = 5
    VERIFY_FILE_PREVIEW_CHARS: int = 500

    # ==========================================
    # Claude
    # ==========================================
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_BASE_URL: str = ""  # Empty means use default Anthropic URL
    CLAUDE_MODEL: str = "claude-sonnet-4-20250514"
    CLAUDE_MAX_TOKENS: int = 8192
    CLAUDE_TEMPERATURE: float = 0.7
    CLAUDE_REQUEST_TIMEOUT: int = 300
    CLAUDE_CONNECT_TIMEOUT: int = 60
    CLAUDE_RATE_LIMIT_RETRIES: int = 3  # total attempts on 429
    CLAUDE_RATE_LIMIT_BACKOFF: float = 2.0  # seconds, multiplied by attempt number
    CLAUDE_MAX_TOOL_ITERATIONS: int = 25

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env that aren't defined in Settings

    @property
    def projects_dir(self) -> Path:
        return Path(self.PROJECTS_PATH).resolve()

    @property
    def template_excludes(self) -> List[str]:
        return parse_csv_list(self.TEMPLATE_EXCLUDES)

    @property
    def templates_dir(self) -> Path:
        return Path(self.TEMPLATES_PATH).resolve()


# Create settings instance
settings = Settings()
