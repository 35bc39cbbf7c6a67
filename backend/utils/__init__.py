"""Shared helpers: authentication and environment detection."""
