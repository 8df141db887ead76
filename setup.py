"""
Shelfwise setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="shelfwise",
    version="1.0.0",
    description="Shelfwise — multi-tenant inventory folder tree and access control core",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "shelfwise=shelfwise.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "psycopg2-binary>=2.9",
        "pydantic>=2.5",
        "celery[redis]>=5.3",
        "networkx>=3.2",
        "pyyaml>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
        ],
    },
)
