"""HTTP layer for the SAML Service Provider."""
