"""
OIDC AuthService application.

Entry point: authservice.app.main:main
"""
