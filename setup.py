"""Setup configuration for Portal Report Sync."""

from setuptools import setup

setup(
    name="portal_report_sync",
    version="1.0.0",
    description="Portal Report Sync - monthly report reconciliation against converted leads",
    py_modules=["report_sync", "portal_retrieval", "download_watcher"],
    python_requires=">=3.9",
    install_requires=[
        "selenium>=4.10",
        "rapidfuzz>=3.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.12.0",
            "pytest-timeout>=2.2.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "report-sync=report_sync:main",
        ],
    },
)
