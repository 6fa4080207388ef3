"""notifyhub: API key authentication, quotas and security audit for the notification API."""

__version__ = "1.0.0"
