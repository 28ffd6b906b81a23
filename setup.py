import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

version = {}
with open(r"acmeissuer/version.py") as fp:
    exec(fp.read(), version)

dependencies = [
    "acme>=4.0.0",
    "aiohttp>=3.9.0",
    "boto3>=1.26.0",
    "botocore>=1.29.0",
    "cachetools>=5.0.0",
    "click>=8.0.0",
    "cryptography>=42.0.0",
    "dnspython>=2.3.0",
    "josepy>=2.0.0",
    "pydantic>=2.0.0",
    "pydantic-settings>=2.0.0",
    "PyYAML>=6.0",
]

test_dependencies = [
    "pytest>=7.0.0",
    "pytest-asyncio>=0.23.0",
]

setuptools.setup(
    name="acmeissuer",
    version=version["__version__"],
    description="An asyncio ACME client that obtains certificates through DNS-01 on Route 53, Porkbun, GoDaddy "
    "and Cloudflare",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["acmeissuer", "acmeissuer.*"]),
    install_requires=dependencies,
    extras_require={"test": test_dependencies},
    entry_points={"console_scripts": ["acmeissuer=acmeissuer.main:main"]},
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
)
