#!/usr/bin/env python3
"""
Setup script for the MCP OAuth 2.1 authorization core
"""

from pathlib import Path

from setuptools import setup, find_packages

HERE = Path(__file__).parent


def read_requirements(filename):
    """Read requirement lines, skipping comments and blanks"""
    lines = (HERE / filename).read_text().splitlines()
    return [line.strip() for line in lines if line.strip() and not line.startswith("#")]


setup(
    name="mcp-oauth",
    version="1.0.0",
    description="OAuth 2.1 authorization core for MCP servers with in-process and Redis credential stores",
    python_requires=">=3.10",
    packages=find_packages(include=["mcp_oauth", "mcp_oauth.*"]),
    install_requires=read_requirements("requirements.txt"),
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
            "fakeredis[lua]>=2.20",
        ],
    },
)
