"""Core module for configuration and infrastructure adapters."""
