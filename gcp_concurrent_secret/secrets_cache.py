# -*- coding: utf-8 -*-
"""Read-through cache of many secrets.

Entries live in a bounded ``cachetools.LRUCache`` together with the time they
expire. An expired entry is not dropped, it is what the next fetch refreshes
from, and a fetch that fails leaves it where it was. At most one fetch per
secret is in flight, every concurrent ``get``/``update`` of that secret awaits
the same one.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from functools import partial
from typing import Optional

from cachetools import LRUCache
from google.api_core.client_options import ClientOptions

from .cache_secret import CachedSecret
from .concurrent_secret import create_client
from .inflight import InFlightRequests

_DEFAULT = object()


@dataclass
class CacheFetchOptions:
    """Passed to a refresh function. Assigning ``ttl`` changes how long the refreshed entry lives."""
    name: str
    ttl: Optional[float]
    forced: bool


@dataclass
class _CacheRecord:
    entry: CachedSecret
    ttl: Optional[float]
    expires: float


class SecretsCache:

    def __init__(self,
                 client=None,
                 maxsize=1024,
                 ttl=None,
                 allow_stale=False,
                 timer=time.monotonic,
                 **concurrent_secret_options):
        """
        Args:
            client: an async Secret Manager client shared by all entries, or client
                options used to build one.
            maxsize (int): maximum number of secrets held, least recently used go first.
            ttl (float, optional): default time to live of an entry in seconds, None never expires.
            allow_stale (bool): return an expired entry straight away while it is refreshed
                in the background.
            timer (callable): monotonic clock in seconds.
            concurrent_secret_options: ``grace_period``, ``call_options`` and
                ``_credentials_callback`` for every entry's ConcurrentSecret.
        """
        assert ttl is None or ttl >= 0.0, "Secrets cache ttl cannot be negative"
        self._client_options = None
        self._client = None
        if client is None or isinstance(client, (dict, ClientOptions)):
            self._client_options = client
        else:
            self._client = client
        self._concurrent_secret_options = concurrent_secret_options
        self.cache = LRUCache(maxsize=maxsize)
        self.ttl = ttl
        self.allow_stale = allow_stale
        self.timer = timer
        self._in_flight = InFlightRequests()
        self._background = set()

    @property
    def client(self):
        if self._client is None:
            self._client = create_client(self._client_options,
                                         self._concurrent_secret_options.get("_credentials_callback"))
        return self._client

    def _expires(self, ttl):
        if ttl is None:
            return math.inf
        return self.timer() + ttl

    def _is_fresh(self, record):
        return self.timer() < record.expires

    def set(self, name, initial_value=None, refresh_function=None, ttl=_DEFAULT, encoding="UTF-8"):
        """
        Register or replace the secret name.

        :type initial_value: str
        :param initial_value: value served until the first refresh, if None the entry is
                              refreshed straight away

        :type refresh_function: callable
        :param refresh_function: called with a CacheFetchOptions to produce a new value

        :type ttl: float
        :param ttl: time to live in seconds, the cache ttl when omitted

        :type encoding: str
        :param encoding: character encoding of the secret payload, default is UTF-8
        :return CachedSecret the registered entry
        """
        if ttl is _DEFAULT:
            ttl = self.ttl
        entry = CachedSecret(name,
                             value=initial_value,
                             refresh_function=refresh_function,
                             client=self.client,
                             encoding=encoding,
                             **self._concurrent_secret_options)
        # An entry without a value is stored already expired
        expires = self._expires(ttl) if initial_value is not None else -math.inf
        self.cache[name] = _CacheRecord(entry=entry, ttl=ttl, expires=expires)
        self._in_flight.forget(name)

        if initial_value is None:
            self._refresh_in_background(name, forced=True)
        return entry

    async def get(self, name):
        """
        Return the cached entry for name, fetched first if it is missing or expired.

        A secret never set is fetched as an entry without refresh function,
        google.api_core.exceptions.NotFound is raised if it does not exist.
        """
        if name in self._in_flight:
            record = self.cache.get(name)
            if self.allow_stale and record is not None and record.entry.value is not None:
                return record.entry
            return await self._fetch(name, forced=False)

        record = self.cache.get(name)
        if record is not None and self._is_fresh(record):
            return record.entry
        if self.allow_stale and record is not None and record.entry.value is not None:
            self._refresh_in_background(name, forced=False)
            return record.entry
        return await self._fetch(name, forced=False)

    async def update(self, name):
        """Refresh name regardless of its remaining time to live."""
        return await self._fetch(name, forced=True)

    def get_remaining_ttl(self, name):
        """Seconds before name expires, math.inf if it never does, 0 if absent or expired."""
        record = self.cache.get(name)
        if record is None:
            return 0
        if record.expires == math.inf:
            return math.inf
        return max(record.expires - self.timer(), 0)

    def _fetch(self, name, forced):
        return self._in_flight.run(name, lambda: self._refresh(name, forced))

    async def _refresh(self, name, forced):
        record = self.cache.get(name)
        if record is not None:
            entry, ttl = record.entry, record.ttl
        else:
            entry = CachedSecret(name, client=self.client, **self._concurrent_secret_options)
            ttl = self.ttl

        options = CacheFetchOptions(name=name, ttl=ttl, forced=forced)
        refreshed = await entry.refresh(options)

        # set() may have replaced the entry while this fetch was running
        if self.cache.get(name) is record:
            self.cache[name] = _CacheRecord(entry=refreshed, ttl=ttl, expires=self._expires(options.ttl))
        else:
            logging.getLogger(__name__).debug(f"Secret {name} was set again while refreshing, result not cached")
        return refreshed

    def _refresh_in_background(self, name, forced):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # no loop, the next get() fetches it instead
            return
        task = asyncio.ensure_future(self._fetch(name, forced))
        self._background.add(task)
        task.add_done_callback(partial(self._background_done, name))

    def _background_done(self, name, task):
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logging.getLogger(__name__).warning(f"Background refresh of secret {name} failed: {error!r}")
