"""Service layer: credentials, the generation gateway and the job API client."""

from .token_provider import (  # noqa: F401
    AccessToken,
    GoogleTokenProvider,
    StaticTokenProvider,
    TokenProvider,
    build_token_provider,
)
from .gateway import VertexGateway  # noqa: F401
from .job_client import JobApiClient, watch_job  # noqa: F401

__all__ = [
    "AccessToken",
    "GoogleTokenProvider",
    "StaticTokenProvider",
    "TokenProvider",
    "build_token_provider",
    "VertexGateway",
    "JobApiClient",
    "watch_job",
]
