from setuptools import setup, find_packages

setup(
    name="hybrid-srs",
    version="0.1.0",
    description="Hybrid SM-2 and graph-enhanced spaced repetition engine",
    packages=find_packages(),
    install_requires=[
        "fastapi>=0.100.0",
        "uvicorn>=0.15.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "sqlalchemy[asyncio]>=2.0.0",
        "aiosqlite>=0.19.0",
        "python-dotenv>=0.19.0",
        "pyyaml>=6.0",
        "numpy>=1.22.0",
        "openai>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "httpx>=0.24.0",
        ],
    },
    python_requires=">=3.9",
)
