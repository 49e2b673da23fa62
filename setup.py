"""Setup configuration for the chat lead email pipeline."""

from setuptools import find_packages, setup

setup(
    name="chat-lead-email",
    version="0.1.0",
    packages=find_packages(include=["src", "src.*"]),
    package_dir={"": "."},
    python_requires=">=3.8",
    install_requires=[
        "boto3>=1.34",
        "botocore>=1.34",
        "requests>=2.31",
    ],
    extras_require={
        "test": ["pytest>=7.4"],
    },
)
