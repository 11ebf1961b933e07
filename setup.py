# setup.py
from setuptools import setup, find_packages

# Lee las dependencias desde requirements.txt
with open('requirements.txt') as f:
    required = [line for line in f.read().splitlines() if line and not line.startswith('#')]

setup(
    name="dlmm_position_agent",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    py_modules=["daemon", "verify_db"],
    install_requires=required,
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": [
            "run-agent=daemon:main",
            "close-all-positions=daemon:close_all_main",
            "inspect-db=verify_db:inspect_database",
        ],
    },
)
