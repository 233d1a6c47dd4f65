import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()  # loads .env for local dev

@dataclass(frozen=True)
class Settings:
    env: str = os.getenv("ENV", "local")
    service_name: str = os.getenv("SERVICE_NAME", "case-lifecycle")
    log_file: str = os.getenv("LOG_FILE", "logs/app.log")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # REST backend (empty url = in-process mock backend)
    crm_api_url: str = os.getenv("CRM_API_URL", "")
    crm_api_token: str = os.getenv("CRM_API_TOKEN", "")
    crm_timeout: float = float(os.getenv("CRM_TIMEOUT", "20"))

    # Idempotency claims (empty url = in-memory claims)
    redis_url: str = os.getenv("REDIS_URL", "")
    idempotency_ttl: int = int(os.getenv("IDEMPOTENCY_TTL", "60"))

    # Notifications
    slack_bot_token: str = os.getenv("SLACK_BOT_TOKEN", "")
    slack_default_channel: str = os.getenv("SLACK_DEFAULT_CHANNEL", "#case-pipeline")
    slack_alert_channel: str = os.getenv("SLACK_ALERT_CHANNEL", "#case-alerts")

    # Default storage folder root for new projects
    storage_root: str = os.getenv("STORAGE_ROOT", "Clients")

settings = Settings()
