#!/usr/bin/env python3
"""
nomad-metrics: Nomad cluster metrics agent

Polls the Nomad HTTP API and reports job, deployment, member, node and
per-task allocation metrics in the monitoring-agent plugin format.
"""

from pathlib import Path
from setuptools import setup, find_packages

# Project metadata
PROJECT_NAME = "nomad-metrics"
VERSION = "0.1.0"
DESCRIPTION = "Nomad cluster metrics agent and monitoring plugin"
LONG_DESCRIPTION = (Path(__file__).parent / "README.md").read_text(encoding="utf-8")
LONG_DESCRIPTION_CONTENT_TYPE = "text/markdown"
LICENSE = "MIT"
PYTHON_REQUIRES = ">=3.11"

# Core dependencies
INSTALL_REQUIRES = [
    "typer>=0.9.0",
    "rich>=13.0.0",
    "pyyaml>=6.0",
    "pydantic>=2.0",
    "requests>=2.31.0",
    "python-dotenv>=1.2.1,<2",
]

# Development dependencies
EXTRAS_REQUIRE = {
    "dev": [
        "pytest>=7.0.0",
        "pytest-cov>=4.0.0",
        "pytest-asyncio>=0.21.0",
        "black>=23.0.0",
        "ruff>=0.1.0",
        "mypy>=1.0.0",
        "pre-commit>=3.0.0",
    ],
    "test": [
        "pytest>=7.0.0",
        "pytest-cov>=4.0.0",
        "pytest-asyncio>=0.21.0",
        "coverage>=7.0.0",
    ],
}

# Include all extras in "all"
EXTRAS_REQUIRE["all"] = [
    dep for deps in EXTRAS_REQUIRE.values() for dep in deps
]

# Package classification
CLASSIFIERS = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "License :: OSI Approved :: MIT License",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Distributed Computing",
]

# Entry points (CLI commands)
ENTRY_POINTS = {
    "console_scripts": [
        "nomad-metrics=nomad_metrics.cli:main",
    ],
}

# Package discovery
PACKAGES = find_packages(where="src")
PACKAGE_DIR = {"": "src"}

# Setup configuration
setup(
    name=PROJECT_NAME,
    version=VERSION,
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type=LONG_DESCRIPTION_CONTENT_TYPE,
    license=LICENSE,

    # Package configuration
    packages=PACKAGES,
    package_dir=PACKAGE_DIR,
    include_package_data=True,

    # Dependencies
    python_requires=PYTHON_REQUIRES,
    install_requires=INSTALL_REQUIRES,
    extras_require=EXTRAS_REQUIRE,

    # Entry points
    entry_points=ENTRY_POINTS,

    # Classification
    classifiers=CLASSIFIERS,

    # Additional metadata
    keywords="nomad monitoring metrics mackerel plugin",

    # Build configuration
    zip_safe=False,
    platforms=["any"],
)
