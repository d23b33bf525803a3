"""Setup script for the Pod Booking Service."""

from setuptools import setup, find_packages

setup(
    name="pod-booking",
    version="1.0.0",
    description="Coworking pod booking service with VNPay payment reconciliation",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["pod_booking", "pod_booking.*"]),
    install_requires=[
        line.strip()
        for line in open("requirements.txt")
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "aiosqlite>=0.19.0",
            "httpx>=0.26.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pod-booking-api=pod_booking.api.main:main",
            "pod-booking-outbox=pod_booking.workers.outbox_publisher:main",
            "pod-booking-expiry=pod_booking.workers.payment_expiry_worker:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
