from setuptools import setup, find_packages


setup(
    name="marchive",
    version="0.1",
    packages=find_packages(),
    description="PSB container reader/writer and MArchive (.m) packer.",
    author="vercingetorx",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "zstandard>=0.22.0",
    ],
    entry_points={
        "console_scripts": [
            "marchive=marchive.cli:main",
        ]
    },
)
