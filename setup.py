"""
Setup script for mongoguard.

Allows development installation with `pip install -e .`
"""

import re
from pathlib import Path

from setuptools import setup, find_packages

VERSION = re.search(
    r'__version__ = "([^"]+)"',
    (Path(__file__).parent / "mongoguard" / "version.py").read_text(),
).group(1)

setup(
    name="mongoguard",
    version=VERSION,
    packages=find_packages(include=["mongoguard", "mongoguard.*"]),
    python_requires=">=3.11",
    install_requires=[
        "pymongo>=4.6",
        "tenacity>=8.2",
        "python-dotenv>=1.0",
        "cryptography>=41.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
)
