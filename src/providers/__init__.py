"""Cloud provider clients and the reconciliation pattern that drives them."""

from config import CloudflareConfig, ComputeConfig, ConfigError
from providers.base import ApiError, ProviderError
from providers.cloudflare import CloudflareClient
from providers.hetzner import HetznerClient
from providers.reconcile import Reconciler

PROVIDERS = {
    'hetzner': HetznerClient,
}


def compute_client(config: ComputeConfig):
    """Build the compute client for the configured provider."""
    try:
        client_class = PROVIDERS[config.provider]
    except KeyError:
        raise ConfigError(f"Unknown compute provider: {config.provider}") from None
    return client_class(api_key=config.api_key)


def cloudflare_client(config: CloudflareConfig) -> CloudflareClient:
    return CloudflareClient(api_token=config.api_token, account_id=config.account_id)


__all__ = [
    'ApiError',
    'CloudflareClient',
    'HetznerClient',
    'ProviderError',
    'Reconciler',
    'cloudflare_client',
    'compute_client',
]
