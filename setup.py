
"""Setup configuration for orbitctl."""

from setuptools import setup, find_packages

setup(
    name="orbitctl",
    version="1.0.0",
    description="Service and project lifecycle tracking for Orbit development environments",
    author="Your Name",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "httpx>=0.25.0",
        "websockets>=12.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "orbitctl=orbitctl.cli:cli",
        ],
    },
    python_requires=">=3.10",
)
