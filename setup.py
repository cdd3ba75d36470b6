"""
OptiFlow build script.

Usage:
    # Development (editable install with test tools):
    pip install -e ".[test]"

    # Run the CLI:
    optiflow --help
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "optiflow"

setup(
    name=APP_NAME,
    version="2.0.0",
    description="Content optimization job queue and webhook delivery",
    packages=find_namespace_packages(include=["optiflow", "optiflow.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
        "click>=8.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "optiflow=main:main",
        ],
    },
    python_requires=">=3.10",
)
