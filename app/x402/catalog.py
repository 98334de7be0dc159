# app/x402/catalog.py
"""
Service catalog boundary.

The marketplace catalog that owns service definitions lives outside this
service. The payment engine only needs to read a ServiceConfig and to know
which HTTP routes are metered by which service; ServiceCatalog holds that
read-only view, populated by the composition root.
"""
import fnmatch
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from app.x402.usage import RESOURCE_TYPE_FOR_SERVICE, ResourceType

logger = logging.getLogger(__name__)

SERVICE_TYPES = ("agent", "api", "web_service")
PRICING_MODELS = ("per_request", "per_minute", "per_kb", "per_token")


@dataclass(frozen=True)
class ServiceConfig:
    """x402 terms of one metered service."""
    service_id: str
    service_type: str
    service_name: str
    owner_wallet: str
    base_price: float
    accepts_x402: bool = True
    pricing_model: str = "per_request"
    min_payment: float = 0.0
    max_payment: Optional[float] = None
    currency: str = "USD"
    requires_preauth: bool = False
    max_session_amount: Optional[float] = None
    is_active: bool = True

    def __post_init__(self):
        if self.service_type not in SERVICE_TYPES:
            raise ValueError(f"Unknown service type: {self.service_type}")
        if self.pricing_model not in PRICING_MODELS:
            raise ValueError(f"Unknown pricing model: {self.pricing_model}")
        if self.base_price < 0:
            raise ValueError("base_price cannot be negative")

    @property
    def resource_type(self) -> str:
        return RESOURCE_TYPE_FOR_SERVICE.get(self.service_type, ResourceType.API_CALL.value)

    @property
    def resource_prefix(self) -> str:
        return f"{self.service_type}/{self.service_id}"

    def default_resource_pattern(self) -> str:
        """Pattern covering every resource of this service."""
        return f"{self.resource_prefix}/*"

    def resource_for(self, path: str) -> str:
        """Resource name of a request path, as matched against session patterns."""
        return f"{self.resource_prefix}/{path.lstrip('/')}"


class ServiceCatalog:
    """In-process registry of services and the routes they meter."""

    def __init__(self):
        self._services: Dict[Tuple[str, str], ServiceConfig] = {}
        self._routes: List[Tuple[str, str, Tuple[str, str]]] = []
        self._lock = threading.Lock()

    def register(self, service: ServiceConfig, routes: Optional[List[Tuple[str, str]]] = None) -> None:
        """
        Add or replace a service.

        Args:
            service: Service terms
            routes: (method, path glob) pairs metered by this service; method "*" matches any
        """
        key = (service.service_id, service.service_type)
        with self._lock:
            self._services[key] = service
            self._routes = [r for r in self._routes if r[2] != key]
            for method, path in routes or []:
                self._routes.append((method.upper(), path, key))
        logger.info(f"x402: registered service {service.service_type}/{service.service_id}")

    def get(self, service_id: str, service_type: str) -> Optional[ServiceConfig]:
        """Active service config, or None."""
        with self._lock:
            service = self._services.get((service_id, service_type))
        if service is None or not service.is_active:
            return None
        return service

    def list_services(self) -> List[ServiceConfig]:
        with self._lock:
            return [s for s in self._services.values() if s.is_active]

    def resolve(self, method: str, path: str) -> Optional[ServiceConfig]:
        """The active service metering ``method path``, or None if the route is free."""
        method = method.upper()
        with self._lock:
            routes = list(self._routes)
        for route_method, pattern, key in routes:
            if route_method not in ("*", method):
                continue
            if fnmatch.fnmatchcase(path, pattern):
                return self.get(*key)
        return None


def load_catalog_file(catalog: ServiceCatalog, path: str) -> int:
    """
    Register services from a JSON file.

    The file holds a list of objects with the ServiceConfig fields plus an
    optional ``routes`` list of ``[method, path glob]`` pairs.

    Returns:
        Number of services registered
    """
    with open(Path(path), "r") as f:
        entries = json.load(f)

    for entry in entries:
        entry = dict(entry)
        routes = [tuple(route) for route in entry.pop("routes", [])]
        catalog.register(ServiceConfig(**entry), routes=routes)

    logger.info(f"x402: loaded {len(entries)} services from {path}")
    return len(entries)
