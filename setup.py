"""
chunkscribe — setuptools build script.

Usage:
    # Development (editable install):
    pip install -e .[test]

    # Run the worker from a checkout:
    python3 main.py --config /path/to/config.json
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "chunkscribe"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Claim-based worker that assembles chunked media uploads and transcribes them",
    packages=find_namespace_packages(include=["chunkscribe", "chunkscribe.*"]),
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
)
