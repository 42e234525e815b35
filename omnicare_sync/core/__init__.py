"""Core definitions shared across the package."""
