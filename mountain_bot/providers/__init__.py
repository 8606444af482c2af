"""External data providers consulted by the aggregator."""

from .base import HttpProvider, ProviderUnavailable
from .mountix import MountixClient
from .overpass import OverpassClient
from .weather import NominatimGeocoder, OpenMeteoClient, static_map_url
from .wikipedia import WikipediaClient

__all__ = [
    "HttpProvider",
    "MountixClient",
    "NominatimGeocoder",
    "OpenMeteoClient",
    "OverpassClient",
    "ProviderUnavailable",
    "WikipediaClient",
    "static_map_url",
]
