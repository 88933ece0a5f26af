"""
Core configuration management for the Kai matching engine.
Secrets are loaded from Key Vault, never hardcoded.
"""

from typing import Optional
from pydantic_settings import BaseSettings
from azure.identity import DefaultAzureCredential
from azure.keyvault.secrets import SecretClient


class Settings(BaseSettings):
    """Application settings loaded from environment variables and Key Vault."""

    # Environment ("local" runs against in-memory stores)
    environment: str = "dev"

    # Azure Resources
    key_vault_name: Optional[str] = None
    cosmos_db_endpoint: Optional[str] = None
    cosmos_database: str = "kai"
    redis_hostname: Optional[str] = None
    redis_port: int = 6380

    # Telemetry export
    applicationinsights_connection_string: Optional[str] = None
    otlp_endpoint: Optional[str] = None

    # Generative model (Azure OpenAI)
    azure_openai_endpoint: Optional[str] = None
    azure_openai_api_version: str = "2024-08-01-preview"
    ranking_deployment: str = "gpt-4o"
    location_deployment: str = "gpt-4o-mini"
    model_timeout_seconds: float = 30.0

    # Matching
    max_ai_candidates: int = 25
    round_robin_default_limit: int = 5

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = False

    # CORS Origins (comma-separated)
    cors_origins: str = "*"

    class Config:
        env_file = ".env"
        case_sensitive = False


class KeyVaultSecrets:
    """Secrets loaded from Azure Key Vault using Managed Identity."""

    def __init__(self, key_vault_name: str):
        self.credential = DefaultAzureCredential()
        vault_url = f"https://{key_vault_name}.vault.azure.net"
        self.client = SecretClient(vault_url=vault_url, credential=self.credential)

    @property
    def azure_openai_endpoint(self) -> str:
        """Azure OpenAI service endpoint."""
        return self._get_secret("AzureOpenAI-Endpoint")

    @property
    def azure_openai_api_key(self) -> str:
        """Azure OpenAI API key (used when token auth is not available)."""
        return self._get_secret("AzureOpenAI-ApiKey")

    @property
    def redis_access_key(self) -> str:
        """Redis Cache access key."""
        return self._get_secret("Redis-AccessKey")

    def _get_secret(self, name: str) -> str:
        """Retrieve secret from Key Vault."""
        try:
            secret = self.client.get_secret(name)
            return secret.value
        except Exception as e:
            raise ValueError(f"Failed to retrieve secret '{name}' from Key Vault: {e}")


# Global configuration instances
settings = Settings()
secrets: Optional[KeyVaultSecrets] = None

def initialize_secrets():
    """Initialize Key Vault secrets client (call during app startup)."""
    global secrets
    if not settings.key_vault_name:
        raise RuntimeError("KEY_VAULT_NAME is not configured")
    secrets = KeyVaultSecrets(settings.key_vault_name)


def get_settings() -> Settings:
    """Get application settings."""
    return settings


def get_secrets() -> Optional[KeyVaultSecrets]:
    """Get Key Vault secrets (None when running without Key Vault)."""
    return secrets
