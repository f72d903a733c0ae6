from __future__ import annotations

import logging

from pydantic_settings import BaseSettings, SettingsConfigDict

from billing.domain.enums import GatewayMode
from billing.domain.models import GatewayCredentials
from billing.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Param public test account
PARAM_TEST_ENDPOINT = "https://test-dmz.param.com.tr/turkpos.ws/service_turkpos_test.asmx"
PARAM_PROD_ENDPOINT = "https://posws.param.com.tr/turkpos.ws/service_turkpos_prod.asmx"


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    # General
    api_bearer_token: str = "testtoken"
    admin_key: str = ""
    base_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"

    # Param (TurkPOS) config
    param_mode: GatewayMode = GatewayMode.TEST
    param_namespace: str = "https://turkpos.com.tr/"
    param_timeout_seconds: float = 30.0

    param_client_code: str = "10738"
    param_client_username: str = "Test"
    param_client_password: str = "Test"
    param_terminal_id: str = "10738"
    param_guid: str = "0c13d406-873b-403b-9c09-a5766840d98c"
    param_endpoint_url: str = PARAM_TEST_ENDPOINT

    param_prod_client_code: str = ""
    param_prod_client_username: str = ""
    param_prod_client_password: str = ""
    param_prod_terminal_id: str = ""
    param_prod_guid: str = ""
    param_prod_endpoint_url: str = PARAM_PROD_ENDPOINT

    # Lemon Squeezy config
    lemon_squeezy_api_key: str = ""
    lemon_squeezy_store_id: str = ""
    lemon_squeezy_webhook_secret: str = ""
    lemon_squeezy_base_url: str = "https://api.lemonsqueezy.com/v1"
    lemon_basic_monthly_variant_id: str = "basic_monthly_variant_id"
    lemon_basic_3months_variant_id: str = "basic_3months_variant_id"
    lemon_basic_yearly_variant_id: str = "basic_yearly_variant_id"
    lemon_premium_monthly_variant_id: str = "premium_monthly_variant_id"
    lemon_premium_3months_variant_id: str = "premium_3months_variant_id"
    lemon_premium_yearly_variant_id: str = "premium_yearly_variant_id"
    lemon_vip_monthly_variant_id: str = "vip_monthly_variant_id"
    lemon_vip_3months_variant_id: str = "vip_3months_variant_id"
    lemon_vip_yearly_variant_id: str = "vip_yearly_variant_id"

    # Database (PostgreSQL)
    db_host: str = ""
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    db_schema: str = "billing"

    @property
    def db_enabled(self) -> bool:
        return bool(self.db_host and self.db_user and self.db_name)

    @property
    def db_dsn(self) -> str:
        if not self.db_enabled:
            return ""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    def lemon_variant_id(self, plan_id: str) -> str | None:
        return getattr(self, f"lemon_{plan_id}_variant_id", None)

    # Pydantic v2 settings config
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


def resolve_credentials(cfg: Settings) -> GatewayCredentials:
    """Select the credential set for the configured mode.

    Raises ConfigurationError when any field of the active set is empty, so a
    misconfigured deployment fails at startup instead of on the first payment.
    """
    if cfg.param_mode is GatewayMode.PRODUCTION:
        values = {
            "client_code": cfg.param_prod_client_code,
            "client_username": cfg.param_prod_client_username,
            "client_password": cfg.param_prod_client_password,
            "terminal_id": cfg.param_prod_terminal_id,
            "secret_guid": cfg.param_prod_guid,
            "endpoint_url": cfg.param_prod_endpoint_url,
        }
        prefix = "PARAM_PROD_"
    else:
        values = {
            "client_code": cfg.param_client_code,
            "client_username": cfg.param_client_username,
            "client_password": cfg.param_client_password,
            "terminal_id": cfg.param_terminal_id,
            "secret_guid": cfg.param_guid,
            "endpoint_url": cfg.param_endpoint_url,
        }
        prefix = "PARAM_"
    missing = [name for name, value in values.items() if not (value or "").strip()]
    if missing:
        env_names = [prefix + ("GUID" if name == "secret_guid" else name.upper()) for name in missing]
        raise ConfigurationError(
            "Param credentials are missing",
            details={"mode": cfg.param_mode.value, "missing": env_names},
        )
    logger.info("param credentials resolved", extra={"mode": cfg.param_mode.value})
    return GatewayCredentials(mode=cfg.param_mode, **{k: v.strip() for k, v in values.items()})


settings = Settings()
