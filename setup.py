"""
Setup script for quizsync.

quizsync keeps a classroom's quiz answers flowing when the internet
does not. It serves two roles:

1. Client core - connection mode controller with local cache and
   reconciliation against the remote response store
2. Local Hub - LAN websocket relay that fans answers out to peers

The 'quizsync' command starts and inspects the Local Hub.
"""

from setuptools import find_packages, setup

setup(
    name="quizsync",
    version="1.0.0",
    description="Offline-first classroom quiz response sync with a local relay hub",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # Transport
        "httpx>=0.25.0",
        "websockets>=13.0",
        # Logging
        "loguru>=0.7.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "quizsync=quizsync.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Education",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
    ],
    keywords="classroom quiz offline sync websocket relay education",
)
