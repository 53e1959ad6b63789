from setuptools import setup, find_packages
from pgtopology import __version__
import os

setup(
    name = "pgtopology",
    version = os.getenv("VERSION") or __version__,
    zip_safe = False,
    packages = find_packages(exclude=["test"]),
    python_requires = ">=3.11",
    install_requires = ['psycopg2 >= 2.8.0'],
    extras_require = {
        'test': ['pytest'],
    },
    dependency_links = [],
    package_data = {},
    data_files = [],
    entry_points = {
        'console_scripts': ["pgtopology = pgtopology.pgtopology:main"],
    }
)
