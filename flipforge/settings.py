from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "postgresql+psycopg://localhost/flipforge"
    db_auto_create_tables: bool = False

    # 파이프라인
    ingestion_confidence_threshold: int = 80  # 이 값 미만이면 수동 입력 분기
    pipeline_worker_count: int = 2  # 0이면 큐에만 적재 (실행기 없음)
    pipeline_recover_on_startup: bool = True
    log_retention_days: int = 30

    # 업로드
    upload_rate_limit: str = "10/minute"
    upload_max_files: int = 10
    upload_allowed_mime_prefix: str = "image/"

    # 이미지 저장소
    storage_backend: str = "local"  # local, supabase
    local_storage_dir: str = "./uploads"
    local_storage_base_url: str = "/uploads"
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_bucket: str = "product-images"

    # AI Settings
    default_ai_provider: str = "openai"  # gemini, ollama, or openai

    # OpenAI
    openai_api_keys: list[str] = []  # List of keys for rotation
    openai_model: str = "gpt-4o-mini"

    # Gemini
    gemini_api_keys: list[str] = []
    gemini_model: str = "gemini-1.5-flash"

    # Ollama
    ollama_base_url: str = "http://127.0.0.1:11434"
    ollama_model: str = "qwen3:8b"
    ollama_vision_model: str = "qwen3-vl:8b"

    # WooCommerce / WordPress 퍼블리싱
    wp_domain: str = ""
    wc_consumer_key: str = ""
    wc_consumer_secret: str = ""
    wp_username: str = ""
    wp_app_password: str = ""
    publish_retry_count: int = 3  # tenacity 재시도 횟수

    # 리스팅 (stage 4)
    listing_channels: list[str] = ["woocommerce"]
    listing_auto_publish: bool = False
    listing_auto_publish_platform: str = "woocommerce"

    @field_validator("database_url")
    @classmethod
    def validate_db_url(cls, v: str) -> str:
        if not v.startswith(("postgresql", "sqlite")):
            raise ValueError("DB URL은 'postgresql' 또는 'sqlite'로 시작해야 합니다.")
        return v

    @field_validator("wp_domain")
    @classmethod
    def validate_http_url(cls, v: str) -> str:
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("URL은 'http://' 또는 'https://'로 시작해야 합니다.")
        return v.rstrip("/")

    @field_validator("ingestion_confidence_threshold")
    @classmethod
    def validate_threshold(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("confidence threshold는 0에서 100 사이여야 합니다.")
        return v

    @field_validator("pipeline_worker_count")
    @classmethod
    def validate_worker_count(cls, v: int) -> int:
        if not 0 <= v <= 16:
            raise ValueError("pipeline_worker_count는 0에서 16 사이여야 합니다.")
        return v

    @field_validator("log_retention_days")
    @classmethod
    def validate_retention(cls, v: int) -> int:
        if v < 1:
            raise ValueError("로그 보관 기간은 1일 이상이어야 합니다.")
        return v

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        if v not in ("local", "supabase"):
            raise ValueError("storage_backend는 'local' 또는 'supabase'여야 합니다.")
        return v

    @field_validator("default_ai_provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in ("openai", "gemini", "ollama"):
            raise ValueError("default_ai_provider는 openai, gemini, ollama 중 하나여야 합니다.")
        return v

    def has_woocommerce_credentials(self) -> bool:
        return bool(self.wp_domain and self.wc_consumer_key and self.wc_consumer_secret)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)


settings = Settings()
