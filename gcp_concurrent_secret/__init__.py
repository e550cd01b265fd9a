# -*- coding: utf-8 -*-
"""gcp_concurrent_secret

Optimistic locking to rotate a GCP Secret Manager secret from many processes
without losing updates, and a read-through cache of secrets that rotates them
through that lock when a fresh value is needed.

"""

from gcp_concurrent_secret.exceptions import NoActiveSecretVersion, \
    SecretCacheError, \
    SecretChecksumError, \
    ConcurrentSecretError, \
    SecretLockedError, \
    SecretValueTypeError
from gcp_concurrent_secret.inflight import InFlightRequests
from gcp_concurrent_secret.concurrent_secret import ConcurrentSecret, \
    SecretAnnotations, \
    create_client
from gcp_concurrent_secret.cache_secret import CachedSecret
from gcp_concurrent_secret.secrets_cache import SecretsCache, CacheFetchOptions
from gcp_concurrent_secret.decorators import InjectKeywordedSecretString, InjectSecretString
from ._version import __version__

__all__ = ["__version__",
           "NoActiveSecretVersion",
           "SecretCacheError",
           "SecretChecksumError",
           "ConcurrentSecretError",
           "SecretLockedError",
           "SecretValueTypeError",
           "InFlightRequests",
           "ConcurrentSecret",
           "SecretAnnotations",
           "create_client",
           "CachedSecret",
           "SecretsCache",
           "CacheFetchOptions",
           "InjectSecretString",
           "InjectKeywordedSecretString"]
