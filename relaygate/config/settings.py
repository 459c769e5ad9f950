"""Runtime settings."""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RELAYGATE_", extra="ignore", populate_by_name=True)

    app_name: str = "RelayGate"
    log_level: str = "info"
    # DEBUG 下是否打印完整请求正文；False 时只打 method/path + body_size
    log_full_request_body: bool = False
    log_dir: str = "logs"
    log_file_max_mb: int = Field(default=10, ge=1)
    log_file_backups: int = Field(default=5, ge=0)
    host: str = "0.0.0.0"
    port: int = Field(default=3040, validation_alias=AliasChoices("RELAYGATE_PORT", "PORT"))
    # HTTP / HTTPS / SOCKS5 代理，作用于所有上游请求
    all_proxy: str = Field(default="", validation_alias=AliasChoices("RELAYGATE_ALL_PROXY", "ALL_PROXY"))
    # 仅用于保护本网关，不会转发给上游；空串表示不校验
    authorization: str = Field(
        default="",
        validation_alias=AliasChoices("RELAYGATE_AUTHORIZATION", "AUTHORIZATION"),
    )
    shutdown_grace_seconds: int = 30

    conversation_url: str = "https://chat.openai.com/backend-anon/conversation"
    chat_requirements_url: str = "https://chat.openai.com/backend-anon/sentinel/chat-requirements"
    upstream_origin: str = "https://chat.openai.com"
    connect_timeout_seconds: float = 10.0
    upstream_timeout_seconds: float = 120.0
    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
    )
    upstream_model: str = "text-davinci-002-render-sha"
    public_model_name: str = "gpt-3.5-turbo"
    message_merge_policy: str = "merge"  # merge | passthrough
    proof_max_iterations: int = Field(default=100_000, ge=1)


settings = Settings()
