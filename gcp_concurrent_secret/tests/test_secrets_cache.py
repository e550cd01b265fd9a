# -*- coding: utf-8 -*-
"""
This modules purpose is to test gcp_concurrent_secret.SecretsCache and CachedSecret

"""

import asyncio
import itertools
import logging
import math
import unittest

from google.api_core import exceptions

from gcp_concurrent_secret import CachedSecret, CacheFetchOptions, SecretsCache
from gcp_concurrent_secret.fake_secret_manager import FakeSecretManagerServiceAsyncClient

PARENT = "projects/1234"
SECRET_IDS = itertools.count(1)


def setup_module():
    logging.basicConfig(level=logging.DEBUG)


class FakeTimer:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def tick(self, seconds):
        self.now += seconds


class TestSecretsCacheWithoutEventLoop(unittest.TestCase):

    def test_set_without_initial_value(self):
        cache = SecretsCache(FakeSecretManagerServiceAsyncClient())
        entry = cache.set(f"{PARENT}/secrets/my-secret")

        assert entry.value is None
        assert not cache._background
        assert cache.get_remaining_ttl(f"{PARENT}/secrets/my-secret") == 0

    def test_negative_ttl(self):
        with self.assertRaises(AssertionError):
            SecretsCache(FakeSecretManagerServiceAsyncClient(), ttl=-1.0)


class SecretsCacheTestCase(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.client = FakeSecretManagerServiceAsyncClient()
        self.timer = FakeTimer()

    async def add_secret(self, *payloads):
        response = await self.client.create_secret(
            request={
                "parent": PARENT,
                "secret_id": f"my-secret-{next(SECRET_IDS)}",
                "secret": {"replication": {"automatic": {}}},
            }
        )
        for payload in payloads:
            await self.add_version(response.name, payload)
        return response.name

    async def add_version(self, name, payload):
        return await self.client.add_secret_version(
            request={"parent": name, "payload": {"data": payload.encode("UTF-8")}}
        )

    async def settle_background(self, cache):
        await asyncio.gather(*list(cache._background), return_exceptions=True)

    def secrets_cache(self, **kwargs):
        return SecretsCache(self.client, timer=self.timer, **kwargs)


class TestCachedSecret(SecretsCacheTestCase):

    async def test_repr_hides_value(self):
        name = await self.add_secret()
        cached_secret = CachedSecret(name, "hunter2", client=self.client)
        assert "hunter2" not in repr(cached_secret)
        assert name in repr(cached_secret)

    async def test_clone_keeps_version(self):
        name = await self.add_secret("version-1")
        cached_secret = await CachedSecret(name, client=self.client).refresh()

        cloned = cached_secret.clone("other-value")

        assert cloned is not cached_secret
        assert cloned.value == "other-value"
        assert cloned.version_name == f"{name}/versions/1"
        assert cloned.concurrent_secret is cached_secret.concurrent_secret

    async def test_refresh_returns_new_entry(self):
        name = await self.add_secret("version-1")
        cached_secret = CachedSecret(name, "initial-value", lambda: "updated-value", client=self.client)

        refreshed = await cached_secret.refresh()

        assert refreshed is not cached_secret
        assert cached_secret.value == "initial-value"
        assert cached_secret.version_name is None
        assert refreshed.value == "version-1"
        assert refreshed.version_name == f"{name}/versions/1"
        assert refreshed.refresh_function is cached_secret.refresh_function

    async def test_refresh_same_value_rotates(self):
        name = await self.add_secret("version-1")
        cached_secret = CachedSecret(name, "version-1", lambda: "version-2", client=self.client)

        refreshed = await cached_secret.refresh()

        assert refreshed.value == "version-2"
        assert refreshed.version_name == f"{name}/versions/2"

    async def test_refresh_decodes_bytes(self):
        name = await self.add_secret()
        cached_secret = CachedSecret(name, None, lambda: "välue".encode("latin-1"),
                                     client=self.client, encoding="latin-1")

        refreshed = await cached_secret.refresh()

        assert refreshed.value == "välue"
        assert refreshed.encoding == "latin-1"

    async def test_encoding_round_trips(self):
        name = await self.add_secret()
        writer = await CachedSecret(name, None, lambda: "välue", client=self.client, encoding="latin-1").refresh()
        reader = await CachedSecret(name, client=self.client, encoding="latin-1").refresh()

        assert writer.value == "välue"
        assert reader.value == "välue"
        assert reader.version_name == writer.version_name
        response = await self.client.access_secret_version(request={"name": f"{name}/versions/latest"})
        assert response.payload.data == "välue".encode("latin-1")

    async def test_identical_encoded_value_rotates(self):
        name = await self.add_secret()
        await self.client.add_secret_version(
            request={"parent": name, "payload": {"data": "välue".encode("latin-1")}})
        cached_secret = CachedSecret(name, "välue", lambda: "nëw-välue", client=self.client, encoding="latin-1")

        refreshed = await cached_secret.refresh()

        assert refreshed.value == "nëw-välue"
        assert refreshed.version_name == f"{name}/versions/2"

    async def test_refresh_passes_arguments(self):
        name = await self.add_secret()
        received = []

        def refresh_function(*args):
            received.append(args)
            return "new-value"

        cached_secret = CachedSecret(name, refresh_function=refresh_function, client=self.client)
        await cached_secret.refresh("first", 2)

        assert received == [("first", 2)]


class TestSecretsCacheSet(SecretsCacheTestCase):

    async def test_set_with_initial_value(self):
        name = await self.add_secret("version-1")
        cache = self.secrets_cache()

        entry = cache.set(name, "initial-value")
        cached_secret = await cache.get(name)

        assert cached_secret is entry
        assert cached_secret.value == "initial-value"
        assert cached_secret.version_name is None
        assert self.client.count_requests("access_secret_version") == 0

    async def test_set_without_initial_value_refreshes(self):
        name = await self.add_secret("version-1", "version-2")
        cache = self.secrets_cache()

        cache.set(name)
        cached_secret = await cache.get(name)
        await self.settle_background(cache)

        assert cached_secret.value == "version-2"
        assert cached_secret.version_name == f"{name}/versions/2"
        assert self.client.count_requests("access_secret_version") == 1

    async def test_set_without_initial_value_refreshes_in_background(self):
        name = await self.add_secret("version-1")
        cache = self.secrets_cache()

        cache.set(name)
        await self.settle_background(cache)

        assert cache.cache[name].entry.value == "version-1"
        assert await cache.get(name) is cache.cache[name].entry

    async def test_failed_background_refresh_is_logged(self):
        cache = self.secrets_cache()
        name = f"{PARENT}/secrets/does-not-exist"

        with self.assertLogs("gcp_concurrent_secret.secrets_cache", level="WARNING") as logs:
            cache.set(name)
            await self.settle_background(cache)
            await asyncio.sleep(0)

        assert any("does-not-exist" in line for line in logs.output)
        with self.assertRaises(exceptions.NotFound):
            await cache.get(name)

    async def test_set_during_refresh_wins(self):
        name = await self.add_secret("version-1")
        cache = self.secrets_cache()
        started = asyncio.Event()
        proceed = asyncio.Event()

        async def refresh_function(options):
            started.set()
            await proceed.wait()
            return "version-2"

        cache.set(name, "version-1", refresh_function)
        promised_update = asyncio.ensure_future(cache.update(name))
        await started.wait()
        replaced = cache.set(name, "replaced-value")
        proceed.set()
        refreshed = await promised_update

        assert refreshed.value == "version-2"
        assert await cache.get(name) is replaced

    async def test_least_recently_used_is_evicted(self):
        names = [await self.add_secret("value") for _ in range(3)]
        cache = self.secrets_cache(maxsize=2)

        for name in names:
            cache.set(name, "initial-value")

        assert names[0] not in cache.cache
        assert names[1] in cache.cache
        assert names[2] in cache.cache


class TestSecretsCacheGet(SecretsCacheTestCase):

    async def test_secret_not_in_cache(self):
        name = await self.add_secret("initial-value")
        cache = self.secrets_cache()

        cached_secret = await cache.get(name)

        assert cached_secret.value == "initial-value"
        assert cached_secret.refresh_function is None
        assert cache.get_remaining_ttl(name) == math.inf

    async def test_set_with_encoding(self):
        name = await self.add_secret()
        await self.client.add_secret_version(
            request={"parent": name, "payload": {"data": "välue".encode("latin-1")}})
        cache = self.secrets_cache()

        cache.set(name, encoding="latin-1")
        cached_secret = await cache.get(name)
        await self.settle_background(cache)

        assert cached_secret.value == "välue"
        assert cached_secret.encoding == "latin-1"

    async def test_malformed_name_without_initial_value(self):
        cache = self.secrets_cache()
        name = f"{PARENT}/non-existing-secret"

        cache.set(name, None, lambda options: "new-value")
        with self.assertRaises(exceptions.InvalidArgument):
            await cache.get(name)
        await self.settle_background(cache)

        assert cache.cache[name].entry.value is None

    async def test_missing_secret_with_refresh_function(self):
        cache = self.secrets_cache()
        name = f"{PARENT}/secrets/non-existing-secret"

        cache.set(name, None, lambda options: "new-value")
        with self.assertRaises(exceptions.NotFound):
            await cache.get(name)
        await self.settle_background(cache)

        assert self.client.count_requests("add_secret_version") == 0

    async def test_secret_not_in_cache_and_not_in_store(self):
        cache = self.secrets_cache()

        with self.assertRaises(exceptions.NotFound):
            await cache.get(f"{PARENT}/secrets/does-not-exist")

        assert cache.get_remaining_ttl(f"{PARENT}/secrets/does-not-exist") == 0

    async def test_default_value_but_not_in_store(self):
        cache = self.secrets_cache()
        cache.set(f"{PARENT}/secrets/does-not-exist", "dummy-value")

        cached_secret = await cache.get(f"{PARENT}/secrets/does-not-exist")

        assert cached_secret.value == "dummy-value"

    async def test_without_initial_value_or_versions(self):
        name = await self.add_secret()
        cache = self.secrets_cache()
        cache.set(name, refresh_function=lambda options: "updated-value")

        cached_secret = await cache.get(name)

        assert cached_secret.value == "updated-value"
        assert cached_secret.version_name == f"{name}/versions/1"

    async def test_without_initial_value_refresh_function_or_versions(self):
        name = await self.add_secret()
        cache = self.secrets_cache()
        cache.set(name)

        cached_secret = await cache.get(name)
        assert cached_secret.value is None

        cached_secret = await cache.update(name)
        assert cached_secret.value is None
        assert (await cache.get(name)).value is None

        await self.add_version(name, "updated-by-someone-value")
        cached_secret = await cache.update(name)

        assert cached_secret.value == "updated-by-someone-value"
        assert cached_secret.version_name == f"{name}/versions/1"

    async def test_expired_entry_is_refreshed(self):
        name = await self.add_secret("version-1-value")
        cache = self.secrets_cache(ttl=60.0)
        count = itertools.count(1)
        cache.set(name, "default-value", lambda options: f"updated-value-{next(count)}")

        assert (await cache.get(name)).value == "default-value"
        assert cache.get_remaining_ttl(name) == 60.0

        self.timer.tick(61)
        assert cache.get_remaining_ttl(name) == 0
        assert (await cache.get(name)).value == "version-1-value"
        assert cache.get_remaining_ttl(name) == 60.0

        self.timer.tick(30)
        assert (await cache.get(name)).value == "version-1-value"
        assert cache.get_remaining_ttl(name) == 30.0

        self.timer.tick(31)
        assert (await cache.get(name)).value == "updated-value-1"
        assert cache.get_remaining_ttl(name) == 60.0

        self.timer.tick(61)
        cached_secret = await cache.get(name)
        assert cached_secret.value == "updated-value-2"
        assert cached_secret.version_name == f"{name}/versions/3"

    async def test_expired_entry_adopts_version_made_elsewhere(self):
        name = await self.add_secret("version-1-value")
        cache = self.secrets_cache(ttl=60.0)

        assert (await cache.get(name)).value == "version-1-value"
        self.timer.tick(61)
        assert (await cache.get(name)).value == "version-1-value"

        await self.add_version(name, "version-2-value")
        self.timer.tick(61)
        cached_secret = await cache.get(name)

        assert cached_secret.value == "version-2-value"
        assert cached_secret.version_name == f"{name}/versions/2"

    async def test_refresh_function_sets_ttl(self):
        name = await self.add_secret("dummy-value")
        cache = self.secrets_cache()
        received = []

        def refresh_function(options):
            received.append(options)
            options.ttl = 10.0
            return "new-value"

        cache.set(name, "dummy-value", refresh_function, ttl=0.1)
        self.timer.tick(100)
        cached_secret = await cache.get(name)

        assert cached_secret.value == "new-value"
        assert cache.get_remaining_ttl(name) == 10.0
        assert received == [CacheFetchOptions(name=name, ttl=10.0, forced=False)]

    async def test_allow_stale_refreshes_in_background(self):
        name = await self.add_secret("version-1-value")
        cache = self.secrets_cache(ttl=60.0, allow_stale=True)
        stale = cache.set(name, "default-value")

        self.timer.tick(61)
        cached_secret = await cache.get(name)
        assert cached_secret is stale
        assert await cache.get(name) is stale

        await self.settle_background(cache)
        cached_secret = await cache.get(name)

        assert cached_secret.value == "version-1-value"
        assert self.client.count_requests("access_secret_version") == 1


class TestSecretsCacheUpdate(SecretsCacheTestCase):

    async def test_update_without_refresh_function_adopts_latest(self):
        name = await self.add_secret("latest-value")
        cache = self.secrets_cache()
        cache.set(name, "x")

        cached_secret = await cache.update(name)

        assert cached_secret.value == "latest-value"
        assert (await cache.get(name)).value == "latest-value"

    async def test_update_without_initial_value_adopts_latest(self):
        name = await self.add_secret("latest-value")
        cache = self.secrets_cache()
        cache.set(name, None, lambda options: "updated-value")

        updated, cached_secret = await asyncio.gather(cache.update(name), cache.get(name))

        assert updated is cached_secret
        assert updated.value == "latest-value"
        assert self.client.count_requests("add_secret_version") == 1

    async def test_initial_value_has_new_version(self):
        name = await self.add_secret()
        version1 = await self.add_version(name, "initial-value")
        await self.client.destroy_secret_version(request={"name": version1.name})
        await self.add_version(name, "new-value")

        cache = self.secrets_cache()
        cache.set(name, "initial-value", lambda options: "updated-value")

        cached_secret = await cache.get(name)
        assert cached_secret.value == "initial-value"
        assert cached_secret.version_name is None

        cached_secret = await cache.update(name)
        assert cached_secret.value == "new-value"
        assert cached_secret.version_name == f"{name}/versions/2"
        assert (await cache.get(name)).value == "new-value"

        cached_secret = await cache.update(name)
        assert cached_secret.value == "updated-value"
        assert cached_secret.version_name == f"{name}/versions/3"
        assert (await cache.get(name)) is cached_secret

        await self.client.destroy_secret_version(request={"name": cached_secret.version_name})
        await self.add_version(name, "updated-by-someone-value")

        cached_secret = await cache.update(name)
        assert cached_secret.value == "updated-by-someone-value"
        assert cached_secret.version_name == f"{name}/versions/4"

        cached_secret = await cache.update(name)
        assert cached_secret.value == "updated-value"
        assert cached_secret.version_name == f"{name}/versions/5"

    async def test_initial_value_has_no_new_version(self):
        name = await self.add_secret("initial-value", "new-value")
        cache = self.secrets_cache()
        cache.set(name, "new-value", lambda options: "updated-value")

        cached_secret = await cache.get(name)
        assert cached_secret.value == "new-value"
        assert cached_secret.version_name is None

        cached_secret = await cache.update(name)
        assert cached_secret.value == "updated-value"
        assert cached_secret.version_name == f"{name}/versions/3"

    async def test_initial_value_without_versions(self):
        name = await self.add_secret()
        cache = self.secrets_cache()
        cache.set(name, "initial-value", lambda options: "updated-value")

        assert (await cache.get(name)).value == "initial-value"

        cached_secret = await cache.update(name)
        assert cached_secret.value == "updated-value"
        assert cached_secret.version_name == f"{name}/versions/1"

    async def test_update_is_forced(self):
        name = await self.add_secret("dummy-value")
        cache = self.secrets_cache()
        received = []

        def refresh_function(options):
            received.append(options.forced)
            return "new-value"

        cache.set(name, "dummy-value", refresh_function)
        cached_secret = await cache.update(name)

        assert cached_secret.value == "new-value"
        assert received == [True]
        assert cache.get_remaining_ttl(name) == math.inf

    async def test_concurrent_calls_share_one_refresh(self):
        name = await self.add_secret("dummy-value")
        cache = self.secrets_cache()
        cache.set(name, "dummy-value", lambda options: "new-value")

        results = await asyncio.gather(cache.update(name), cache.get(name),
                                       cache.update(name), cache.get(name))

        assert all(result is results[0] for result in results)
        assert results[0].value == "new-value"
        assert self.client.count_requests("add_secret_version") == 2
        assert self.client.count_requests("update_secret") == 3

        # settled, the next update starts a new refresh
        cached_secret = await cache.update(name)
        assert cached_secret is not results[0]

    async def test_failed_update_keeps_previous_value(self):
        name = await self.add_secret("latest-value")
        cache = self.secrets_cache()

        def refresh_function(options):
            raise RuntimeError("foo")

        previous = cache.set(name, "latest-value", refresh_function)

        results = await asyncio.gather(cache.update(name), cache.update(name), return_exceptions=True)

        assert isinstance(results[0], RuntimeError)
        assert results[0] is results[1]
        cached_secret = await cache.get(name)
        assert cached_secret is previous
        assert cached_secret.value == "latest-value"

        secret = await self.client.get_secret(request={"name": name})
        assert "locked_at" not in secret.annotations
        assert self.client.count_requests("add_secret_version") == 1
