"""Setup script for the StorePilot package."""

from setuptools import setup, find_namespace_packages

setup(
    name="storepilot",
    version="0.1.0",
    packages=find_namespace_packages(include=["storepilot*"]),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "structlog>=24.1",
        "tenacity>=8.2",
        "prometheus-client>=0.20",
        "httpx>=0.27",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
    ],
    extras_require={
        "test": ["pytest>=8.0", "pytest-asyncio>=0.23"],
    },
    description="StorePilot - Grounded query orchestration for commerce assistants",
    author="StorePilot Team",
)
