# -*- coding: utf-8 -*-
"""Registry of requests currently in flight.

Callers asking for the same key while a request is pending share its result
instead of issuing a second request. The entry is dropped as soon as the
request settles so the next caller starts a fresh one.
"""

import asyncio
from functools import partial


class InFlightRequests:

    def __init__(self):
        self._pending = {}

    def __contains__(self, key):
        return key in self._pending

    def __len__(self):
        return len(self._pending)

    async def run(self, key, factory):
        """
        Await the request registered under key, starting it with factory() if none is pending.

        :type key: hashable
        :param key: identity of the operation

        :type factory: callable
        :param factory: zero argument function returning the awaitable to run
        :return the settled result, shared by every caller of the same request
        """
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._pending[key] = task
            task.add_done_callback(partial(self._settled, key))
        # one caller being cancelled must not cancel the request for the others
        return await asyncio.shield(task)

    def _settled(self, key, task):
        if self._pending.get(key) is task:
            del self._pending[key]

    def forget(self, key=None):
        """Drop the pending request for key, or all of them. Pending tasks keep running."""
        if key is None:
            self._pending.clear()
        else:
            self._pending.pop(key, None)
