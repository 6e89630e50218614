"""Vendor API clients -- capability interfaces and HTTP implementations.

Provides the CommerceAPI and CRMAPI ABCs consumed by the sync engine, with
concrete implementations:
- BigCommerceClient: source storefront (orders, customers, carts, webhooks)
- HubSpotClient: target CRM (contacts, deals, associations)
"""

from src.relay.clients.base import CRMAPI, CommerceAPI
from src.relay.clients.bigcommerce import BigCommerceClient
from src.relay.clients.hubspot import HubSpotClient

__all__ = [
    "CommerceAPI",
    "CRMAPI",
    "BigCommerceClient",
    "HubSpotClient",
]
