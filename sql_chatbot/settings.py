from pydantic import Field
from pydantic_settings import BaseSettings

class Config(BaseSettings):
    db_url: str
    gemini_api_key: str
    gemini_model: str = Field(default="gemini-2.5-pro")
    title_model: str = Field(default="gemini-2.5-flash")
    thinking_budget: int = Field(default=8192)
    include_thoughts: bool = Field(default=True)
    chat_max_duration: float = Field(default=30.0)
    max_tool_steps: int = Field(default=5)
    require_confirmation: bool = Field(default=True)
    identity_api_url: str = Field(default="https://api.clerk.com/v1")
    identity_secret_key: str | None = Field(default=None)
    db_max_retries: int = Field(default=3)
    db_retry_base_delay: float = Field(default=1.0)

config = Config() # type: ignore
