"""
Setup script for oobgc.
"""

from setuptools import setup, find_packages

# Read the contents of README file
from pathlib import Path
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding='utf-8')

setup(
    name="oobgc-scheduler",
    version="0.1.0",
    description="Out-of-band garbage collection for WSGI workers",
    long_description=long_description,
    long_description_content_type='text/markdown',
    license="Apache-2.0",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.8",
    install_requires=[
        "psutil>=5.8",
        "numpy>=1.20",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
)
