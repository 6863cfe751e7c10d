import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


repo_dir = os.path.dirname(os.path.abspath(__file__))
env_path = os.path.join(repo_dir, ".env")
venv_env_path = os.path.join(repo_dir, ".venv", ".env")
default_assets_dir = os.path.join(repo_dir, "assets")

LOGGER_NAME = "poap_preview"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_MAX_POST_BYTES = 1024 * 1024
DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0
DEFAULT_UPLOAD_DRAIN_SECONDS = 30.0

# Used only when the primary name is unset.
ENV_DEFAULTS_FROM = {
    "TRUSTED_CALLER_KEY": "POAP_API_KEY",
    "CLOUDFLARE_IMAGES_API_TOKEN": "CLOUDFLARE_API_TOKEN",
}


def load_environment() -> None:
    load_dotenv(dotenv_path=venv_env_path, override=False)
    load_dotenv(dotenv_path=env_path, override=True)

    for target, source in ENV_DEFAULTS_FROM.items():
        value = os.getenv(source)
        if value and not os.getenv(target):
            os.environ[target] = value


logger = logging.getLogger(LOGGER_NAME)


def configure_logging(log_file: Optional[str] = None) -> logging.Logger:
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        if log_file:
            os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
            handler: logging.Handler = logging.FileHandler(log_file)
        else:
            handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False
    return logger


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number; using %s.", name, raw, default)
        return default


class PreviewSettings(BaseModel):
    poap_api_key: Optional[str] = None
    trusted_caller_key: Optional[str] = None
    cron_secret: Optional[str] = None

    cloudflare_account_id: Optional[str] = None
    cloudflare_kv_namespace_id: Optional[str] = None
    cloudflare_kv_api_token: Optional[str] = None
    cloudflare_images_api_token: Optional[str] = None

    assets_dir: str = default_assets_dir
    log_file: Optional[str] = None
    max_post_bytes: int = Field(default=DEFAULT_MAX_POST_BYTES, gt=0)
    http_timeout_seconds: float = Field(default=DEFAULT_HTTP_TIMEOUT_SECONDS, gt=0)
    upload_drain_seconds: float = Field(default=DEFAULT_UPLOAD_DRAIN_SECONDS, ge=0)

    @property
    def kv_configured(self) -> bool:
        return all([self.cloudflare_account_id, self.cloudflare_kv_namespace_id, self.cloudflare_kv_api_token])

    @classmethod
    def from_env(cls) -> "PreviewSettings":
        load_environment()
        return cls(
            poap_api_key=os.getenv("POAP_API_KEY"),
            trusted_caller_key=os.getenv("TRUSTED_CALLER_KEY"),
            cron_secret=os.getenv("CRON_SECRET"),
            cloudflare_account_id=os.getenv("CLOUDFLARE_ACCOUNT_ID"),
            cloudflare_kv_namespace_id=os.getenv("CLOUDFLARE_KV_NAMESPACE_ID"),
            cloudflare_kv_api_token=os.getenv("CLOUDFLARE_KV_API_TOKEN"),
            cloudflare_images_api_token=os.getenv("CLOUDFLARE_IMAGES_API_TOKEN"),
            assets_dir=os.getenv("PREVIEW_ASSETS_DIR") or default_assets_dir,
            log_file=os.getenv("PREVIEW_LOG_FILE") or None,
            max_post_bytes=int(_env_float("MAX_POST_BYTES", DEFAULT_MAX_POST_BYTES)),
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", DEFAULT_HTTP_TIMEOUT_SECONDS),
            upload_drain_seconds=_env_float("UPLOAD_DRAIN_SECONDS", DEFAULT_UPLOAD_DRAIN_SECONDS),
        )
