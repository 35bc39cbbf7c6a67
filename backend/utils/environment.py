"""
Environment Configuration Utility

Provides environment detection for deployment-sensitive behavior.

ENVIRONMENT values:
- production: shared state expected (Redis rate limiter, confirmed DB init)
- development: in-memory fallbacks allowed
- test: in-memory fallbacks allowed for automated testing
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}

# Get current environment (default to development for safety)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

# Validate environment value
if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def is_production() -> bool:
    """Check if running in production environment."""
    return ENVIRONMENT == "production"
