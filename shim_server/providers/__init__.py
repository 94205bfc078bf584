"""Expose shim providers and the registry."""

from .base import ShimProvider
from .fitbit import FitbitProvider
from .googlefit import GoogleFitProvider
from .oauth2 import OAuth2Provider
from .registry import ProviderRegistry, build_provider_registry
from .withings import WithingsProvider

__all__ = [
    "FitbitProvider",
    "GoogleFitProvider",
    "OAuth2Provider",
    "ProviderRegistry",
    "ShimProvider",
    "WithingsProvider",
    "build_provider_registry",
]
