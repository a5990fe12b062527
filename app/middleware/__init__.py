"""
Middleware Package
Request authentication helpers
"""
from app.middleware.webhook_auth import get_webhook_secret, is_valid_secret

__all__ = ['get_webhook_secret', 'is_valid_secret']
