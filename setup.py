from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="relay-agent",
    version="0.1.0",
    description="Conversational agent orchestration engine",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["relay", "relay.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries :: Application Frameworks",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "click>=8.1.7",
        "rich>=13.7.0",
        "python-dotenv>=1.0.0",
        "structlog>=23.2.0",
        "httpx>=0.25.2",
        "simpleeval>=0.9.13",
        "PyYAML>=6.0",
        "tenacity>=8.2.0",
        "jsonschema>=4.17.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "relay=relay.cli.main:cli",
        ],
    },
)
