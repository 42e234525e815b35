"""Monitoring and metrics."""
