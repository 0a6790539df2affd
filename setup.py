from setuptools import setup, find_packages

setup(
    name="coupon-service",
    version="0.1.0",
    packages=find_packages(include=["coupons", "coupons.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "uvicorn[standard]",
        "pydantic>=2",
        "pydantic-settings>=2.3",
        "sqlalchemy[asyncio]>=2.0",
        "asyncpg",
        "aiosqlite",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
