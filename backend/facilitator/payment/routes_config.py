"""
Route configuration for paywalled resources.

Defines which routes of a resource server require payment and on what terms.
"""

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional

from facilitator.payment.types import PaymentRequirements, Scheme


@dataclass(frozen=True)
class RouteConfig:
    """Payment terms for one route. Paths may contain ``*`` wildcards."""

    path: str
    network: str
    asset: str
    max_amount_required: int  # smallest unit of the asset
    method: str = "*"
    scheme: str = Scheme.EXACT.value
    description: str = ""
    mime_type: str = "application/json"
    max_timeout_seconds: int = 300
    extra: Optional[Dict[str, Any]] = None

    def matches(self, path: str, method: str) -> bool:
        if self.method != "*" and self.method.upper() != method.upper():
            return False
        return path == self.path or fnmatchcase(path, self.path)

    def to_requirements(self, resource: str, pay_to: str) -> PaymentRequirements:
        """Build the PaymentRequirements advertised for this route."""
        return PaymentRequirements(
            scheme=self.scheme,
            network=self.network,
            max_amount_required=self.max_amount_required,
            resource=resource,
            description=self.description or f"Access to {self.path}",
            mime_type=self.mime_type,
            pay_to=pay_to,
            max_timeout_seconds=self.max_timeout_seconds,
            asset=self.asset,
            extra=self.extra,
        )


class RouteRegistry:
    """Registry of paywalled routes."""

    def __init__(self, routes: Optional[List[RouteConfig]] = None):
        self._routes: List[RouteConfig] = []
        for route in routes or []:
            self.register(route)

    def register(self, config: RouteConfig) -> None:
        """Register a route configuration.

        Raises:
            ValueError: If the price is negative
        """
        if config.max_amount_required < 0:
            raise ValueError(f"Negative price for route {config.path}")
        self._routes.append(config)

    def match(self, path: str, method: str = "GET") -> Optional[RouteConfig]:
        """Get the payment config for a request, or None if the route is free.

        Exact path matches win over wildcard patterns.
        """
        candidates = [route for route in self._routes if route.matches(path, method)]
        for route in candidates:
            if route.path == path:
                return route
        return candidates[0] if candidates else None

    def list_all(self) -> List[RouteConfig]:
        return list(self._routes)
