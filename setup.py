from setuptools import setup, find_packages

setup(
    name="nudge",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*", "alembic", "alembic.*"]),
    python_requires=">=3.9",
    install_requires=[
        "fastapi",
        "uvicorn",
        "sqlalchemy>=2.0",
        "alembic",
        "psycopg2-binary",
        "python-jose[cryptography]",
        "python-dotenv",
        "pydantic>=2",
        "pydantic-settings",
        "celery",
        "redis",
        "croniter",
        "prometheus-client",
        "prometheus-fastapi-instrumentator",
        "requests",
        "pywebpush",
        "telnyx<3",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
)
