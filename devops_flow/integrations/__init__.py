"""External DevOps integrations: configuration, fetchers and the listing cache."""

from devops_flow.integrations.cache import IntegrationDataCache, ListingSnapshot, ListingStatus
from devops_flow.integrations.config import Integration, IntegrationRegistry
from devops_flow.integrations.errors import IntegrationError
from devops_flow.integrations.fetchers import FetcherRegistry

__all__ = [
    "FetcherRegistry",
    "Integration",
    "IntegrationDataCache",
    "IntegrationError",
    "IntegrationRegistry",
    "ListingSnapshot",
    "ListingStatus",
]
