from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    database_url: str = Field(default="sqlite+aiosqlite:///./loan_pipeline.db", alias="DATABASE_URL")
    allowed_origins: list[str] = Field(default=["*"], alias="ALLOWED_ORIGINS")
    rate_limit_per_minute: int = Field(default=60, alias="RATE_LIMIT_PER_MINUTE")
    rate_limit_storage_uri: str = Field(default="memory://", alias="RATE_LIMIT_STORAGE_URI")
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")

    # Google workspace
    google_credentials_file: str = Field(default="credentials.json", alias="GOOGLE_CREDENTIALS_FILE")
    spreadsheet_id: str = Field(default="", alias="SPREADSHEET_ID")
    loan_template_id: str = Field(default="", alias="LOAN_TEMPLATE_ID")
    approval_template_id: str = Field(default="", alias="APPROVAL_TEMPLATE_ID")
    return_template_id: str = Field(default="", alias="RETURN_TEMPLATE_ID")
    documents_folder_id: str = Field(default="", alias="DOCUMENTS_FOLDER_ID")
    pdf_folder_id: str = Field(default="", alias="PDF_FOLDER_ID")
    photo_folder_id: str = Field(default="", alias="PHOTO_FOLDER_ID")
    ledger_provider: Literal["google", "memory"] = Field(default="google", alias="LEDGER_PROVIDER")
    storage_provider: Literal["drive", "local"] = Field(default="drive", alias="STORAGE_PROVIDER")

    # Upload staging
    local_upload_dir: str = Field(default="uploads", alias="LOCAL_UPLOAD_DIR")
    public_base_url: str = Field(default="http://localhost:8080", alias="PUBLIC_BASE_URL")
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")

    # Messaging gateway
    messaging_url: str = Field(
        default="https://wa.bangkitsolusibangsa.id/send-message", alias="MESSAGING_URL"
    )
    messaging_api_key: str = Field(default="", alias="MESSAGING_API_KEY")
    messaging_sender: str = Field(default="", alias="MESSAGING_SENDER")
    messaging_timeout_seconds: float = Field(default=10.0, alias="MESSAGING_TIMEOUT_SECONDS")
    approver_no: str = Field(default="6287760573989", alias="APPROVER_NO")
    approval_link: str = Field(default="https://example.com/approval", alias="APPROVAL_LINK")
    return_form_link: str = Field(default="https://s.id/FormKembaliAlat", alias="RETURN_FORM_LINK")
    approver_fallback_name: str = Field(default="Bapak/Ibu", alias="APPROVER_FALLBACK_NAME")
    country_prefix: str = Field(default="62", alias="COUNTRY_PREFIX")
    timezone: str = Field(default="Asia/Jakarta", alias="TIMEZONE")

    # Rendering
    strict_placeholders: bool = Field(default=False, alias="STRICT_PLACEHOLDERS")
    image_width_pt: float = Field(default=400, alias="IMAGE_WIDTH_PT")
    image_height_pt: float = Field(default=225, alias="IMAGE_HEIGHT_PT")

    # Pipeline supervision
    pipeline_queue_size: int = Field(default=100, alias="PIPELINE_QUEUE_SIZE")
    pipeline_workers: int = Field(default=4, alias="PIPELINE_WORKERS")
    ordinal_conflict_retries: int = Field(default=3, alias="ORDINAL_CONFLICT_RETRIES")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
