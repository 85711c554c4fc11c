#!/usr/bin/env python3
"""
STACKFORGE PROVIDERS
--------------------
The opaque capability behind each resource type. The orchestrator only
ever calls create() and read(); what a "network" or a "server" means is
the provider's business.
"""

import logging
import uuid
from abc import ABCMeta, abstractmethod
from typing import Any, Dict, Optional, Tuple

from stackforge.core.errors import MaterializationError

logger = logging.getLogger("stackforge.providers")


class Provider(metaclass=ABCMeta):

    @abstractmethod
    def create(self, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """Returns (identity, output attributes). Raises on failure."""

    @abstractmethod
    def read(self, identity: str) -> Dict[str, Any]:
        """Returns current output attributes of an existing resource."""


class NullProvider(Provider):
    """
    Simulated provider: assigns a random identity and echoes the inputs
    back as outputs. Lets a configuration be applied end to end without a
    cloud account.
    """

    def __init__(self, prefix: str = "sf"):
        self.prefix = prefix
        self._created: Dict[str, Dict[str, Any]] = {}

    def create(self, attributes):
        identity = f"{self.prefix}-{uuid.uuid4().hex[:12]}"
        outputs = dict(attributes)
        self._created[identity] = outputs
        logger.debug(f"Simulated create -> {identity}")
        return identity, dict(outputs)

    def read(self, identity):
        try:
            return dict(self._created[identity])
        except KeyError:
            raise MaterializationError(f"unknown identity {identity!r}")


class ProviderRegistry:
    """Maps resource type tags to providers, with an optional catch-all."""

    def __init__(self, default: Optional[Provider] = None):
        self._providers: Dict[str, Provider] = {}
        self.default = default

    def register(self, type_name: str, provider: Provider) -> "ProviderRegistry":
        self._providers[type_name] = provider
        return self

    def known_types(self):
        """None when a default provider accepts every type."""
        return None if self.default is not None else set(self._providers)

    def get(self, type_name: str) -> Provider:
        provider = self._providers.get(type_name, self.default)
        if provider is None:
            raise MaterializationError(f"no provider registered for resource type {type_name!r}")
        return provider
