# setup.py
from setuptools import setup, find_packages

setup(
    name="cpswap",
    version="0.1.0",
    packages=find_packages(include=["cpswap", "cpswap.*"]),
    python_requires=">=3.9",
    install_requires=[
        "plyvel",             # LevelDB state store
        "msgpack",            # mint records, command signing payloads
        "PyNaCl",             # ed25519
        "pycryptodome",       # keccak address derivation
        "prometheus_client",  # metrics
        "psutil",             # monitoring
    ],
    extras_require={
        "test": ["pytest"],
    },
)
