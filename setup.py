"""Setup script for the BuildForge orchestration engine."""

from setuptools import setup, find_packages

setup(
    name="buildforge",
    version="0.1.0",
    packages=find_packages(include=["buildforge", "buildforge.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "structlog>=24.1",
        "prometheus-client>=0.20",
        "langchain-core>=0.2",
        "langchain-ollama>=0.1",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "httpx>=0.27",
        ],
    },
    description="BuildForge - orchestration engine for a pipeline of software-building agents",
    author="BuildForge Team",
)
