"""
Configuration management for the AIDev Pipeline.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = Field(default="AIDev Pipeline", env="APP_NAME")
    debug: bool = Field(default=False, env="DEBUG")
    environment: str = Field(default="development", env="ENVIRONMENT")

    # API
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8000, env="API_PORT")
    api_start_workers: bool = Field(default=False, env="API_START_WORKERS")

    # Database
    database_url: str = Field(
        default="sqlite:///./aidev_pipeline.db", env="DATABASE_URL"
    )

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")

    # LLM
    openai_api_key: Optional[str] = Field(default=None, env="OPENAI_API_KEY")
    openai_base_url: Optional[str] = Field(default=None, env="OPENAI_BASE_URL")
    llm_model: str = Field(default="gpt-4o", env="LLM_MODEL")
    llm_max_retries: int = Field(default=3, env="LLM_MAX_RETRIES")

    # Hosting service
    github_token: Optional[str] = Field(default=None, env="GITHUB_TOKEN")
    github_api_url: str = Field(default="https://api.github.com", env="GITHUB_API_URL")
    base_branch: str = Field(default="main", env="BASE_BRANCH")
    coding_agent_login: str = Field(default="Copilot", env="CODING_AGENT_LOGIN")
    coding_agent_assignee: str = Field(
        default="copilot-swe-agent[bot]", env="CODING_AGENT_ASSIGNEE"
    )
    github_timeout_seconds: float = Field(default=30.0, env="GITHUB_TIMEOUT_SECONDS")

    # Attachments
    attachments_dir: str = Field(default=".", env="ATTACHMENTS_DIR")

    # Reference documents
    reference_docs_dir: str = Field(default="./reference-docs", env="REFERENCE_DOCS_DIR")
    reference_max_chars: int = Field(default=20000, env="REFERENCE_MAX_CHARS")

    # System prompts
    system_prompt_cache_seconds: float = Field(default=300.0, env="SYSTEM_PROMPT_CACHE_SECONDS")

    # Intake reviewer
    intake_enabled: bool = Field(default=True, env="INTAKE_ENABLED")
    intake_interval_seconds: int = Field(default=30, env="INTAKE_INTERVAL_SECONDS")
    intake_initial_delay_seconds: int = Field(default=5, env="INTAKE_INITIAL_DELAY_SECONDS")
    intake_max_reviews: int = Field(default=3, env="INTAKE_MAX_REVIEWS")
    intake_batch_size: int = Field(default=5, env="INTAKE_BATCH_SIZE")
    intake_daily_token_budget: int = Field(default=0, env="INTAKE_DAILY_TOKEN_BUDGET")
    intake_monthly_token_budget: int = Field(default=0, env="INTAKE_MONTHLY_TOKEN_BUDGET")
    intake_temperature: float = Field(default=0.3, env="INTAKE_TEMPERATURE")
    intake_max_tokens: int = Field(default=2000, env="INTAKE_MAX_TOKENS")
    intake_max_existing_requests: int = Field(default=50, env="INTAKE_MAX_EXISTING_REQUESTS")

    # Solution architect
    architect_enabled: bool = Field(default=True, env="ARCHITECT_ENABLED")
    architect_interval_seconds: int = Field(default=60, env="ARCHITECT_INTERVAL_SECONDS")
    architect_initial_delay_seconds: int = Field(default=10, env="ARCHITECT_INITIAL_DELAY_SECONDS")
    architect_max_reviews: int = Field(default=3, env="ARCHITECT_MAX_REVIEWS")
    architect_batch_size: int = Field(default=3, env="ARCHITECT_BATCH_SIZE")
    architect_daily_token_budget: int = Field(default=0, env="ARCHITECT_DAILY_TOKEN_BUDGET")
    architect_monthly_token_budget: int = Field(default=0, env="ARCHITECT_MONTHLY_TOKEN_BUDGET")
    architect_temperature: float = Field(default=0.3, env="ARCHITECT_TEMPERATURE")
    architect_max_tokens: int = Field(default=4000, env="ARCHITECT_MAX_TOKENS")
    architect_max_files_to_read: int = Field(default=20, env="ARCHITECT_MAX_FILES_TO_READ")
    architect_max_input_tokens: int = Field(default=6000, env="ARCHITECT_MAX_INPUT_TOKENS")

    # Implementation trigger
    implementation_enabled: bool = Field(default=True, env="IMPLEMENTATION_ENABLED")
    implementation_interval_seconds: int = Field(default=60, env="IMPLEMENTATION_INTERVAL_SECONDS")
    implementation_initial_delay_seconds: int = Field(default=15, env="IMPLEMENTATION_INITIAL_DELAY_SECONDS")
    implementation_max_concurrent: int = Field(default=3, env="IMPLEMENTATION_MAX_CONCURRENT")

    # PR monitor
    pr_monitor_enabled: bool = Field(default=True, env="PR_MONITOR_ENABLED")
    pr_monitor_interval_seconds: int = Field(default=120, env="PR_MONITOR_INTERVAL_SECONDS")
    pr_monitor_initial_delay_seconds: int = Field(default=20, env="PR_MONITOR_INITIAL_DELAY_SECONDS")
    pr_monitor_pending_to_working_minutes: int = Field(default=2, env="PR_MONITOR_PENDING_TO_WORKING_MINUTES")
    pr_monitor_run_check_minutes: int = Field(default=3, env="PR_MONITOR_RUN_CHECK_MINUTES")
    pr_monitor_timeout_minutes: int = Field(default=30, env="PR_MONITOR_TIMEOUT_MINUTES")

    # Code reviewer
    code_review_enabled: bool = Field(default=True, env="CODE_REVIEW_ENABLED")
    code_review_interval_seconds: int = Field(default=90, env="CODE_REVIEW_INTERVAL_SECONDS")
    code_review_initial_delay_seconds: int = Field(default=30, env="CODE_REVIEW_INITIAL_DELAY_SECONDS")
    code_review_auto_merge: bool = Field(default=True, env="CODE_REVIEW_AUTO_MERGE")
    code_review_min_quality_score: int = Field(default=6, env="CODE_REVIEW_MIN_QUALITY_SCORE")
    code_review_max_reviews_per_pr: int = Field(default=3, env="CODE_REVIEW_MAX_REVIEWS_PER_PR")
    code_review_deployment_mode: str = Field(
        default="staged",
        env="CODE_REVIEW_DEPLOYMENT_MODE",
        description="'staged' leaves approved PRs for a human deploy gate, 'auto' merges immediately.",
    )
    code_review_temperature: float = Field(default=0.2, env="CODE_REVIEW_TEMPERATURE")
    code_review_max_tokens: int = Field(default=2000, env="CODE_REVIEW_MAX_TOKENS")
    code_review_max_input_tokens: int = Field(default=6000, env="CODE_REVIEW_MAX_INPUT_TOKENS")
    code_review_daily_token_budget: int = Field(default=0, env="CODE_REVIEW_DAILY_TOKEN_BUDGET")
    code_review_monthly_token_budget: int = Field(default=0, env="CODE_REVIEW_MONTHLY_TOKEN_BUDGET")

    # Pipeline health orchestrator
    orchestrator_enabled: bool = Field(default=True, env="ORCHESTRATOR_ENABLED")
    orchestrator_interval_seconds: int = Field(default=60, env="ORCHESTRATOR_INTERVAL_SECONDS")
    orchestrator_initial_delay_seconds: int = Field(default=25, env="ORCHESTRATOR_INITIAL_DELAY_SECONDS")
    stall_clarification_days: int = Field(default=7, env="STALL_CLARIFICATION_DAYS")
    stall_architect_review_days: int = Field(default=3, env="STALL_ARCHITECT_REVIEW_DAYS")
    stall_approved_days: int = Field(default=1, env="STALL_APPROVED_DAYS")
    stall_failed_hours: int = Field(default=24, env="STALL_FAILED_HOURS")
    conflict_window_hours: int = Field(default=24, env="CONFLICT_WINDOW_HOURS")
    deployment_grace_minutes: int = Field(default=30, env="DEPLOYMENT_GRACE_MINUTES")
    deployment_timeout_hours: int = Field(default=6, env="DEPLOYMENT_TIMEOUT_HOURS")
    deployment_max_retries: int = Field(default=3, env="DEPLOYMENT_MAX_RETRIES")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
