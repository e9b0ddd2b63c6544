"""Setup script for the Bridgeport integration runtime and bridge CLI."""

from setuptools import find_packages, setup

setup(
    name="bridgeport-runtime",
    version="0.2.0",
    description="Bridgeport - generic runtime for SaaS provider integrations",
    packages=find_packages(include=["bridgeport_connector", "bridgeport_connector.*", "server", "server.*"]),
    py_modules=["bridge"],
    install_requires=[
        "typer[all]>=0.9.0",
        "rich>=13.0.0",
        "httpx>=0.27.0",
        "python-dotenv>=1.0.0",
        "pyngrok>=7.0.0",
        "pydantic>=2.0.0",
        "boto3>=1.34.0",
        "cryptography>=42.0.0",
        "python-dateutil>=2.8.0",
        # Local API server
        "fastapi>=0.110.0",
        "uvicorn>=0.29.0",
        # Integration metrics
        "prometheus-client>=0.19.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.23.0",
            "pytest-cov>=4.0.0",
            "moto>=5.0.0",  # For mocking AWS services
        ],
    },
    entry_points={
        "console_scripts": [
            "bridge=bridge:app",
        ],
    },
    python_requires=">=3.11",
)
