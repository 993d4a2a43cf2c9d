"""Setup script for Lab Platform Backend"""

from setuptools import setup, find_packages

setup(
    name="lab-platform-backend",
    version="1.0.0",
    description="Lab container provisioning engine: quota admission, lifecycle and operation queue",
    packages=find_packages(include=["lab_platform", "lab_platform.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.100.0",
        "uvicorn[standard]>=0.23.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "sqlalchemy[asyncio]>=2.0.0",
        "aiomysql>=0.2.0",
        "motor>=3.3.0",
        "pymongo>=4.5.0",
        "redis>=5.0.1",
        "prometheus-client>=0.18.0",
        "python-dotenv>=1.0.0",
        "structlog>=23.1.0",
        "PyYAML>=6.0",
        "cryptography>=41.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.1.0",
            "hypothesis>=6.80.0",
            "aiosqlite>=0.19.0",
            "httpx>=0.24.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "lab-provision=lab_platform.cli:main",
        ]
    },
)
