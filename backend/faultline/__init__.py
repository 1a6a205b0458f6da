"""Centralized error classification and dispatch for FastAPI services."""
