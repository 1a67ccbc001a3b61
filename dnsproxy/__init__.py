"""DNS proxy that answers plain DNS queries through a DNS-over-HTTPS JSON API."""

__version__ = "0.3.0"
