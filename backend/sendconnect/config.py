from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "SENDConnect API"
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True
    log_level: str = "INFO"
    request_id_header: str = "X-Request-ID"
    auth_enabled: bool = False
    cognito_region: str = ""
    cognito_user_pool_id: str = ""
    cognito_app_client_id: str = ""
    cognito_issuer: str = ""
    admin_group: str = "ADMIN"

    aws_region: str = "eu-west-2"
    storage_backend: str = "local"  # local|s3
    s3_bucket: str = "sendconnect-raw-docs"
    raw_docs_prefix: str = "send-connect-raw-docs"
    storage_root: str = "data/raw-docs"
    topic_store_backend: str = "local"  # local|dynamodb
    topic_table_name: str = ""
    # Local development store; deployed environments point TOPIC_STORE_BACKEND at DynamoDB.
    database_url: str = "sqlite:///./sendconnect.db"

    llama_cloud_api_base: str = "https://api.cloud.llamaindex.ai/api/v1"
    llama_cloud_api_key: str = ""
    # Files are scoped to the project id. The organization id is rejected by /files.
    llama_cloud_project_id: str = ""
    llama_cloud_organization_id: str = ""
    llama_cloud_timeout_seconds: float = 60.0

    anthropic_api_key: str = ""
    anthropic_model: str = "claude-opus-4-5-20251101"
    anthropic_max_tokens: int = 2048

    query_top_k: int = 10
    diagnostic_top_k: int = 5
    citation_excerpt_chars: int = 250
    max_upload_file_bytes: int = 10 * 1024 * 1024

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def missing_indexing_settings(self) -> list[str]:
        return _missing(
            {
                "LLAMA_CLOUD_API_KEY": self.llama_cloud_api_key,
                "LLAMA_CLOUD_PROJECT_ID": self.llama_cloud_project_id,
            }
        )

    def missing_query_settings(self) -> list[str]:
        return _missing(
            {
                "LLAMA_CLOUD_API_KEY": self.llama_cloud_api_key,
                "ANTHROPIC_API_KEY": self.anthropic_api_key,
            }
        )

    def missing_retrieval_settings(self) -> list[str]:
        return _missing({"LLAMA_CLOUD_API_KEY": self.llama_cloud_api_key})


def _missing(values: dict[str, str]) -> list[str]:
    return [name for name, value in values.items() if not str(value or "").strip()]


settings = Settings()
