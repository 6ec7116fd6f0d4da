from .discoverer import PREFETCH_KEY, RECENT_KEY, SEARCH_PROXY_SOURCE, UrlDiscoverer, records_from_setting

__all__ = [
    "PREFETCH_KEY",
    "RECENT_KEY",
    "SEARCH_PROXY_SOURCE",
    "UrlDiscoverer",
    "records_from_setting",
]
