# -*- coding: utf-8 -*-

import grpc


class SecretCacheError(Exception):
    """Base Error class."""


class NoActiveSecretVersion(SecretCacheError):
    CUSTOM_ERROR_MESSAGE = "Secret {} has no active enabled versions"

    def __init__(self, secret):
        super(NoActiveSecretVersion, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(secret))


class SecretChecksumError(SecretCacheError):
    CUSTOM_ERROR_MESSAGE = "Secret version {} payload does not match its crc32c checksum"
    code = grpc.StatusCode.DATA_LOSS

    def __init__(self, version_name):
        super(SecretChecksumError, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(version_name))
        self._version_name = version_name

    @property
    def version_name(self):
        return self._version_name


class ConcurrentSecretError(SecretCacheError):
    """Base class for errors raised while coordinating a secret update.

    Every subclass carries a ``code`` from :class:`grpc.StatusCode` so callers
    can branch on it the same way as on ``google.api_core`` errors
    (``err.grpc_status_code``).
    """

    code = grpc.StatusCode.UNKNOWN


class SecretLockedError(ConcurrentSecretError):
    CUSTOM_ERROR_MESSAGE = "Secret {} is updated by another process since {}"
    code = grpc.StatusCode.ABORTED

    def __init__(self, secret_name, locked_at):
        super(SecretLockedError, self).__init__(
            self.CUSTOM_ERROR_MESSAGE.format(secret_name, locked_at.isoformat()))
        self._secret_name = secret_name
        self._locked_at = locked_at

    @property
    def secret_name(self):
        return self._secret_name

    @property
    def locked_at(self):
        return self._locked_at


class SecretValueTypeError(ConcurrentSecretError, TypeError):
    CUSTOM_ERROR_MESSAGE = "New value for secret {} must be str or bytes, got {}"
    code = grpc.StatusCode.INVALID_ARGUMENT

    def __init__(self, secret_name, value):
        super(SecretValueTypeError, self).__init__(
            self.CUSTOM_ERROR_MESSAGE.format(secret_name, type(value).__name__))
        self._secret_name = secret_name

    @property
    def secret_name(self):
        return self._secret_name
