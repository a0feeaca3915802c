"""
Setup script for HowTube - video to written guide pipeline
"""

from setuptools import setup, find_packages

with open("requirements.txt") as f:
    requirements = f.read().splitlines()
    # Remove comments and empty lines
    requirements = [r for r in requirements if r and not r.startswith("#")]

setup(
    name="howtube",
    version="1.0.0",
    description="Turn a video URL into a structured, multi-section written guide",
    author="HowTube Team",
    packages=find_packages(include=["api", "api.*", "config", "config.*", "core", "core.*", "workers", "workers.*"]),
    py_modules=["cli"],
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "respx>=0.20.2",
        ],
    },
    entry_points={
        "console_scripts": [
            "howtube=cli:cli",
        ],
    },
    python_requires=">=3.11",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
