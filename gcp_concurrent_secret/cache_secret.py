# -*- coding: utf-8 -*-
"""This modules implements the cached secret entry

A cached secret remembers the value it last saw and which version it came
from. Asked to refresh, it reconciles with Secret Manager first and only mints
a new version (through its ConcurrentSecret) when nobody else already did.

Refreshing never changes an entry, it returns a new one. Readers holding the
previous entry keep a consistent value/version pair.
"""

import logging

from .concurrent_secret import ConcurrentSecret, version_ordinal


class CachedSecret:

    def __init__(self,
                 name,
                 value=None,
                 refresh_function=None,
                 concurrent_secret=None,
                 client=None,
                 version_name=None,
                 encoding="UTF-8",
                 **concurrent_secret_options):
        """
        :type name: str
        :param name: secret resource name

        :type value: str
        :param value: initial value, not confirmed against Secret Manager

        :type refresh_function: callable
        :param refresh_function: produces a new secret value (str or bytes, may be async), without one
                                 refresh only reads the latest version

        :type concurrent_secret: ConcurrentSecret
        :param concurrent_secret: lock controller to share, built from client and
                                  concurrent_secret_options when not given

        :type encoding: str
        :param encoding: character encoding of the secret payload, default is UTF-8
        """
        if concurrent_secret is None:
            concurrent_secret = ConcurrentSecret(name, client, **concurrent_secret_options)
        self._name = name
        self._concurrent_secret = concurrent_secret
        self._refresh_function = refresh_function
        self._encoding = encoding
        self.value = value
        self.version_name = version_name

    def __repr__(self):
        # never the value
        return f"CachedSecret(name={self._name!r}, version_name={self.version_name!r})"

    @property
    def name(self):
        return self._name

    @property
    def concurrent_secret(self):
        return self._concurrent_secret

    @property
    def refresh_function(self):
        return self._refresh_function

    @property
    def encoding(self):
        return self._encoding

    def _replace(self, value, version_name):
        return CachedSecret(self._name,
                            value=value,
                            refresh_function=self._refresh_function,
                            concurrent_secret=self._concurrent_secret,
                            version_name=version_name,
                            encoding=self._encoding)

    def clone(self, value):
        """New entry with the same configuration and version, holding value."""
        return self._replace(value, self.version_name)

    def _decode(self, value):
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).decode(self._encoding)
        return value

    def _encode(self, value):
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        return value.encode(self._encoding)

    def _adopt(self, response):
        logging.getLogger(__name__).info(f"Secret {self._name} adopts version {response.name}")
        return self._replace(self._decode(response.payload.data), response.name)

    async def _rotate(self, *args):
        secret_value, version = await self._concurrent_secret.rotate_version(self._refresh_function, *args,
                                                                             encoding=self._encoding)
        return self._replace(self._decode(secret_value), version.name)

    async def refresh(self, *args):
        """
        Return an entry holding a fresher value.

        :param args: passed to the refresh function when a new version has to be made
        :return CachedSecret a new entry, this one is left as is
        """
        if self._refresh_function is None or self.value is None:
            response = await self._concurrent_secret.get_latest_data()
            if response is not None:
                return self._adopt(response)
            if self._refresh_function is not None:
                return await self._rotate(*args)
            # NotFound here means the secret itself is missing rather than without versions
            await self._concurrent_secret.get_secret()
            return self._replace(self.value, self.version_name)

        if self.version_name is None:
            response = await self._concurrent_secret.get_latest_data()
            # Secrets are high entropy, so a different payload means somebody else rotated it
            # and an identical one means our value is the one to replace.
            if response is not None and response.payload.data != self._encode(self.value):
                return self._adopt(response)
            return await self._rotate(*args)

        latest_version = await self._concurrent_secret.get_latest_version()
        if latest_version is not None and version_ordinal(latest_version.name) > version_ordinal(self.version_name):
            response = await self._concurrent_secret.access_version(latest_version.name)
            return self._adopt(response)
        return await self._rotate(*args)
