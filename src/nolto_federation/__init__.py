"""Federation core of the Nolto network: WebFinger resolution, remote caches,
instance health, the delivery queue and message encryption."""

__version__ = "1.0.0"
