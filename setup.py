"""Setup script for the Photo Ingest package."""

from setuptools import setup, find_namespace_packages
from pathlib import Path

# Read README if it exists
readme_file = Path(__file__).parent / "README.md"
long_description = ""
if readme_file.exists():
    long_description = readme_file.read_text(encoding="utf-8")

setup(
    name="photo-ingest",
    version="0.1.0",
    description="Bulk photo ingestion, record matching and face-aware cropping",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Photo Ingest Team",
    packages=find_namespace_packages(include=["photoingest", "photoingest.*", "scripts"]),
    python_requires=">=3.9",
    install_requires=[
        "ultralytics>=8.3.0",
        "opencv-python>=4.9.0",
        "numpy>=1.26.0",
        "pandas>=2.2.0",
        "openpyxl>=3.1.0",  # .xlsx record tables
        "requests>=2.31.0",
        "tqdm>=4.66.0",
        "pillow>=10.3.0",
        "pyyaml>=6.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black",
            "flake8",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            "photoingest-ingest=scripts.ingest_photos:main",
            "photoingest-crop=scripts.crop_photos:main",
            "photoingest-delete=scripts.delete_photos:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
