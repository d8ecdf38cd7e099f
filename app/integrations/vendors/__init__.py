from __future__ import annotations

from typing import Optional

from app.core.config import Settings
from app.core.store import CounterStore
from app.integrations.vendors.base import AuditLog, VendorAdapter
from app.integrations.vendors.certum import CertumAdapter
from app.integrations.vendors.gogetssl import GoGetSslAdapter
from app.integrations.vendors.racent import RacentAdapter, RacentDomesticAdapter
from app.integrations.vendors.trustasia import TrustAsiaAdapter


class VendorRegistry(dict):
    """Product ``source`` key -> adapter, built once per process."""

    def resolve(self, source: str) -> VendorAdapter:
        try:
            return self[source]
        except KeyError:
            raise KeyError(f"No CA adapter registered for source {source!r}") from None


def build_registry(settings: Settings, audit: AuditLog, store: Optional[CounterStore] = None) -> VendorRegistry:
    registry = VendorRegistry()
    registry["certum"] = CertumAdapter(settings.vendor_config("certum"), audit)
    registry["gogetssl"] = GoGetSslAdapter(settings.vendor_config("gogetssl"), audit, store)
    registry["racent"] = RacentAdapter(settings.vendor_config("racent"), audit)
    registry["racent_domestic"] = RacentDomesticAdapter(settings.vendor_config("racent_domestic"), audit)
    registry["trustasia"] = TrustAsiaAdapter(settings.vendor_config("trustasia"), audit)
    return registry


__all__ = ["VendorAdapter", "VendorRegistry", "build_registry"]
