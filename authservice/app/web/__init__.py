"""
Web Server Package

Serves the login landing page, the after-logout page and their static assets
on a listener separate from the authentication endpoints.
"""

from .routes import create_web_app

__all__ = ["create_web_app"]
