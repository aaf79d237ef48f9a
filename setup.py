"""
Setup script for Bulk Import Orchestrator

Submit-then-poll bulk data import service: streaming multipart ingestion,
durable job state machine, batch execution workers and a poll-status protocol.
"""

from setuptools import setup, find_packages
import pathlib

here = pathlib.Path(__file__).parent.resolve()

# Get the long description from the README file
try:
    long_description = (here / "README.md").read_text(encoding="utf-8")
except FileNotFoundError:
    long_description = """
    Bulk Import Orchestrator

    Accepts large multi-file submissions over a streamed multipart upload,
    records them as asynchronous jobs, replays their rows into a record store
    in batches, and lets clients poll for the outcome.
    """

setup(
    name="bulk-import-orchestrator",
    version="1.0.0",
    description="Asynchronous submit-then-poll bulk data import service",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Bulk Import Orchestrator Team",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Framework :: AsyncIO",
        "Framework :: FastAPI",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: Database",
    ],
    keywords="bulk import, multipart, async jobs, batch processing, polling",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Core dependencies
        "asyncpg>=0.27.0",
        "click>=8.0.0",
        "python-multipart>=0.0.18,<0.0.27",

        # Networking and HTTP surface
        "httpx>=0.24.0",
        "fastapi>=0.100.0",
        "uvicorn>=0.20.0",

        # Configuration and serialization
        "pyyaml>=6.0",
        "pydantic>=2.0.0",

        # Monitoring
        "prometheus-client>=0.17.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "httpx>=0.24.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "black>=22.0.0",
            "isort>=5.10.0",
            "mypy>=1.0.0",
            "coverage>=6.0.0",
            "flake8>=5.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "bulk-import=bulk_import_orchestrator.cli.main:main",
        ],
    },
    include_package_data=True,
    package_data={
        "bulk_import_orchestrator": [
            "sql/*.sql",
        ],
    },
)
