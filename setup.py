from setuptools import setup, find_packages

setup(
    name="flightsign",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    install_requires=[
        "rich",
        "requests",
        "python-dotenv",
        "toml",
        "rich-argparse",
        "asn1crypto",
        "PyJWT",
        "cryptography>=42",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "flightsign=flightsign.cli:main",
        ],
    },
)
