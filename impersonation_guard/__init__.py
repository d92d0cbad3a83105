"""Rate limiting for super-admin impersonation sessions."""

__version__ = "0.1.0"
