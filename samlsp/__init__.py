"""samlsp - SAML 2.0 Service Provider core."""

__version__ = "0.1.0"
