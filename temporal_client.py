"""Temporal Cloud client factory.

Creates and manages connections to Temporal Cloud using credentials from
the billing settings (environment, after .env is loaded).
"""

from pathlib import Path
from typing import Optional, Union

from temporalio.client import Client
from temporalio.service import TLSConfig

from core.config import Settings, get_settings


async def get_temporal_client(settings: Optional[Settings] = None) -> Client:
    """Create and return a Temporal Cloud client.

    Reads configuration from settings:
    - TEMPORAL_ENDPOINT: Temporal Cloud endpoint (e.g., "temporal.example.com:7233")
    - TEMPORAL_NAMESPACE: Namespace (e.g., "default")
    - TEMPORAL_API_KEY: API key for Cloud
    - TEMPORAL_CERT_PATH: Path to client certificate (optional, for mTLS)

    Returns:
        Configured Temporal client connected to Cloud

    Raises:
        ValueError: If required environment variables are missing
    """
    settings = settings or get_settings()

    if not settings.temporal_endpoint:
        raise ValueError(
            "TEMPORAL_ENDPOINT environment variable not set. "
            "Set to your Temporal Cloud endpoint (e.g., 'temporal.example.com:7233')"
        )

    if not settings.temporal_api_key:
        raise ValueError(
            "TEMPORAL_API_KEY environment variable not set. "
            "Set to your Temporal Cloud API key"
        )

    # Temporal Cloud always uses TLS; a PEM holding cert and key enables mTLS
    tls_config: Union[bool, TLSConfig] = True
    if settings.temporal_cert_path:
        pem = Path(settings.temporal_cert_path).read_bytes()
        tls_config = TLSConfig(client_cert=pem, client_private_key=pem)

    client = await Client.connect(
        target_host=settings.temporal_endpoint,
        namespace=settings.temporal_namespace,
        tls=tls_config,
        api_key=settings.temporal_api_key,
    )

    return client
