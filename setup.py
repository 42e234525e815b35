#!/usr/bin/env python
"""Setup configuration for OmniCare Offline Sync."""

from setuptools import find_packages, setup

setup(
    name="omnicare-sync",
    version="0.1.0",
    packages=find_packages(include=["omnicare_sync", "omnicare_sync.*"]),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.5.0",
        "pydantic-settings>=2.0.0",
        "cryptography>=41.0.0",
        "httpx>=0.25.0",
        "structlog>=23.2.0",
        "prometheus-client>=0.19.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
)
