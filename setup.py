"""Setup script for the statement reconciliation matcher."""
from setuptools import setup, find_packages

setup(
    name="kodi-recon",
    version="1.0.0",
    description="Bank and mobile-money statement reconciliation for rental income and expenses",
    author="Your Name",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "pandas>=2.0.0",
        "python-dateutil>=2.8.2",
        "rapidfuzz>=3.5.0",
        "jellyfish>=1.0.0",
        "click>=8.1.0",
        "rich>=13.0.0",
        "python-dotenv>=1.0.0",
        "fastapi>=0.100.0",
        "pydantic>=2.0.0",
        "uvicorn>=0.23.0",
        "python-multipart>=0.0.6",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "httpx>=0.24.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "recon=kodi_recon.cli:main",
        ],
    },
)
