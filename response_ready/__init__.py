"""Response Ready service: accounts and the request-security core."""

__version__ = "0.1.0"
