"""
astpipe: Fact-Driven AST Optimization Pipeline

A source-to-source optimizer for Python syntax trees built on:
1. Read-only fact analysis (constants, purity, ranges, types)
2. Gatekeeper-checked rewrite passes
3. Iteration to a fixed point with per-pass self-checks
"""

from setuptools import setup, find_packages

setup(
    name="astpipe",
    version="1.0.0",
    description="Fact-driven AST optimization pipeline for Python",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="astpipe contributors",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[],
    extras_require={
        "dev": [
            "pytest>=7.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "astpipe = astpipe.cli:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Software Development :: Compilers",
    ],
)
