from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic_settings import BaseSettings

CONFIG_DIR = Path(__file__).parent / "config"


class Settings(BaseSettings):
    """Runtime configuration sourced from environment variables."""

    app_url: str = "http://localhost:3000"
    environment: str = "development"

    mercadopago_public_key: str = ""
    mercadopago_access_token: str = ""
    mercadopago_api_url: str = "https://api.mercadopago.com"
    mercadopago_webhook_url: str = ""

    currency: str = "MXN"
    country: str = "MX"
    tax_rate: float = 0.16

    sync_with_store: bool = True
    db_path: str = "marketplace.db"
    gateway_timeout: float = 10.0
    log_level: str = "INFO"

    class Config:
        env_file = "config/.env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def sandbox(self) -> bool:
        return not self.is_production

    @property
    def success_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/checkout/confirmation"

    @property
    def failure_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/checkout/payment"

    @property
    def pending_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/checkout/pending"

    @property
    def notification_url(self) -> str:
        if self.mercadopago_webhook_url:
            return self.mercadopago_webhook_url
        return f"{self.app_url.rstrip('/')}/api/webhooks/mercadopago"


def load_settings() -> Settings:
    """Provide a reusable settings singleton."""

    return Settings()


def load_catalog_config(path: str | Path = CONFIG_DIR / "catalog.yaml") -> dict[str, Any]:
    """Load the catalog seed (categories, sellers, products) from YAML.

    Every product must name a category slug declared in the same file.
    """

    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Catalog config not found at {cfg_path}")

    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    for key in ("categories", "products"):
        if key not in data:
            raise ValueError(f"catalog.yaml must contain a '{key}' list.")

    slugs = {category.get("slug") for category in data["categories"]}
    for product in data["products"]:
        if product.get("category") not in slugs:
            raise ValueError(
                f"Product '{product.get('title', 'unknown')}' references unknown category "
                f"'{product.get('category')}'."
            )

    return data


settings = load_settings()
