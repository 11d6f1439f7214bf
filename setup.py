"""
ArchivedV setuptools build script.

Usage:
    # Development install:
    pip install -e .[test]

    # Run:
    archivedv --config data/config.json
"""

from setuptools import setup

APP_NAME = "archivedv"

setup(
    name=APP_NAME,
    version="2.1.0",
    description="Unattended YouTube live-stream archiver built around yt-dlp",
    packages=[
        "archivedv",
        "archivedv.core",
    ],
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
        "feedparser>=6.0.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "archivedv=main:main",
        ],
    },
)
