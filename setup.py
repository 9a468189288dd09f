"""Package metadata for inboxcache (src/ layout)."""

from setuptools import find_packages, setup

setup(
    name="inboxcache",
    version="0.1.0",
    description="Local durable cache of inbox messages, reconciled against the server's full list",
    python_requires=">=3.11",
    package_dir={"": "src"},
    packages=find_packages("src"),
    install_requires=[
        "click>=8.1",
        "rich>=13.0",
    ],
    extras_require={
        "test": ["pytest>=8.0"],
    },
    entry_points={
        "console_scripts": [
            "inboxcache=inboxcache.cli:main",
        ],
    },
)
