"""Network-aware IP identities, helpers and MongoDB repositories for traffic analysis."""

__version__ = "0.1.0"

__all__ = [
    "util",
    "netutil",
    "data",
    "workers",
    "blacklist",
    "certificate",
    "explodeddns",
    "hostname",
    "host",
    "uconn",
    "useragent",
]