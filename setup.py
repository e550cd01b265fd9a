# -*- coding: utf-8 -*-
"""gcp_concurrent_secret a module for rotating GCP Secret Manager secrets from concurrent processes.

This module provides an optimistic lock over a secret built on etag conditioned updates and
a read-through cache of secrets that rotates them through that lock.

"""

import setuptools
import re
from io import open

VERSIONFILE="gcp_concurrent_secret/_version.py"
verstrline = open(VERSIONFILE, "rt").read()
VSRE = r"^__version__ = ['\"]([^'\"]*)['\"]"
mo = re.search(VSRE, verstrline, re.M)
if mo:
    verstr = mo.group(1)
else:
    raise RuntimeError("Unable to find version string in %s." % (VERSIONFILE,))

with open("README.md", "r", encoding='utf-8') as fh:
    long_description = fh.read()

setuptools.setup(
    name='gcp_concurrent_secret',
    version=verstr,
    author="Mike Moore",
    author_email="z_z_zebra@yahoo.com",
    description="Optimistic locking to rotate google cloud platform secrets from concurrent processes and a read through cache that always converges on the latest version of a secret",
    long_description_content_type="text/markdown",
    long_description=long_description,
    url="https://github.com/Mikemoore63/gcp-concurrent-secret",
    packages=setuptools.find_packages(exclude=["*.tests", "*.tests.*"]),
    python_requires=">=3.8",
    extras_require={
        "test": ["pytest>=7.0"],
    },
    include_package_data=True,
    license="MIT",
    scripts=[],
    install_requires=[
        "google-cloud-secret-manager~=2.0",
        "google-api-core[grpc]>=2.0,<3.0",
        "google-auth>=2.0,<3.0",
        "grpcio~=1.0",
        "google-crc32c~=1.0",
        "python-dateutil~=2.0",
        "cachetools>=5.0,<7.0",
        "protobuf>=3.19,<7.0"
    ],
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],

)
