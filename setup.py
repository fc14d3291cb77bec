#!/usr/bin/env python
# -*- coding: utf-8 -*-

import os
import re

from setuptools import setup


def get_version(package):
    """
    Return package version as listed in `__version__` in `init.py`.
    """
    with open(os.path.join(package, "__init__.py"), encoding="utf8") as f:
        init_py = f.read()
    return re.search("__version__ = ['\"]([^'\"]+)['\"]", init_py).group(1)


def get_long_description():
    """
    Return the README.
    """
    with open("README.md", "r", encoding="utf8") as f:
        return f.read()


def get_packages(package):
    """
    Return root package and all sub-packages.
    """
    return [
        dirpath
        for dirpath, dirnames, filenames in os.walk(package)
        if os.path.exists(os.path.join(dirpath, "__init__.py"))
    ]


setup(
    name="delayed-api",
    version=get_version("delayed_api"),
    license="BSD",
    description="Long-running HTTP responses that notice when the client goes away",
    long_description=get_long_description(),
    long_description_content_type="text/markdown",
    packages=get_packages("delayed_api"),
    python_requires=">=3.9",
    install_requires=[
        "starlette",
        "anyio>=4",
        "httpx",
        "uvicorn",
    ],
    extras_require={
        "test": [
            "pytest",
            "asgi-lifespan",
        ],
    },
    entry_points={
        "console_scripts": ["delayed-api=delayed_api.__main__:main"],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Web Environment",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
        "Topic :: Internet :: WWW/HTTP",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
    ],
)
