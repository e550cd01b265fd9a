# -*- coding: utf-8 -*-
"""In-memory stand-in for ``secretmanager.SecretManagerServiceAsyncClient``.

Implements the subset of Secret Manager used by this library with the same
request and response types, etag checks, ``latest`` alias and
``version_destroy_ttl`` handling as the real service, so concurrency can be
exercised without a project::

    client = FakeSecretManagerServiceAsyncClient()
    await client.create_secret(request={"parent": "projects/1234",
                                        "secret_id": "my-secret",
                                        "secret": {"replication": {"automatic": {}}}})
    concurrent_secret = ConcurrentSecret("projects/1234/secrets/my-secret", client)

Every call yields to the event loop once before touching state, the way a
network round-trip would.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

import google_crc32c
from google.api_core import exceptions
from google.cloud import secretmanager_v1
from google.protobuf import field_mask_pb2

VALID_SECRET_NAME_RE = re.compile(r"^projects/[^/]+/secrets/[\w-]+$")
VERSION_NAME_RE = re.compile(r"^(?P<secret>.+)/versions/(?P<version>[^/]+)$")
LIST_FILTER_RE = re.compile(r"^\s*state\s*(?P<op>!=|=|:)\s*(?P<state>[A-Z_]+)\s*$")

ETAG_MISMATCH = ("The etag provided in the request does not match the resource's current etag. "
                 "Please retry the whole read-modify-write with exponential backoff.")

State = secretmanager_v1.SecretVersion.State


def _utcnow():
    return datetime.now(timezone.utc)


def _new_etag():
    return f'"{os.urandom(7).hex()}"'


def _crc32c(data):
    crc32c = google_crc32c.Checksum()
    crc32c.update(data)
    return int(crc32c.hexdigest(), 16)


@dataclass
class FakeSecretVersion:
    version: secretmanager_v1.SecretVersion
    data: bytes


@dataclass
class FakeSecret:
    secret: secretmanager_v1.Secret
    versions: list = field(default_factory=list)
    metadata: list = field(default_factory=list)


class FakeListSecretVersionsPager:
    """Async iterable over listed versions, like ``ListSecretVersionsAsyncPager``."""

    def __init__(self, versions):
        self.versions = versions

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for version in self.versions:
            yield version


class FakeSecretManagerServiceAsyncClient:

    def __init__(self, _clock=None):
        self._clock = _clock or _utcnow
        self._db = {}
        self.requests = []

    def reset(self):
        self._db.clear()
        self.requests.clear()

    def get_fake_secret(self, name):
        """Stored state of a secret, None if it does not exist."""
        return self._db.get(name)

    def last_metadata(self, name):
        """Metadata sent with the last request touching secret name."""
        return dict(self._db[name].metadata)

    def count_requests(self, method=None):
        return len([r for r in self.requests if method is None or r[0] == method])

    async def _round_trip(self, method, request, metadata):
        await asyncio.sleep(0)
        self.requests.append((method, request))
        logging.getLogger(__name__).debug(f"{method} {type(request).__name__}")

    def _secret(self, name, metadata=None):
        if not VALID_SECRET_NAME_RE.match(name):
            raise exceptions.InvalidArgument("Invalid resource field value in the request.")
        fake_secret = self._db.get(name)
        if fake_secret is None:
            raise exceptions.NotFound(f"Secret [{name}] not found.")
        if metadata:
            fake_secret.metadata = list(metadata)
        return fake_secret

    def _version(self, name, metadata=None):
        version_match = VERSION_NAME_RE.match(name)
        if not version_match:
            raise exceptions.InvalidArgument("Invalid resource field value in the request.")
        # versions of an unknown or malformed secret name are simply not found
        parent = version_match.group("secret")
        fake_secret = self._db.get(parent)
        if fake_secret is None:
            raise exceptions.NotFound(f"Secret [{parent}] not found.")
        if metadata:
            fake_secret.metadata = list(metadata)

        version = version_match.group("version")
        if version == "latest":
            if not fake_secret.versions:
                raise exceptions.NotFound(f"Secret [{parent}] not found or has no versions.")
            return fake_secret, fake_secret.versions[-1]
        ordinal = int(version) if version.isdigit() else 0
        if ordinal < 1 or ordinal > len(fake_secret.versions):
            raise exceptions.NotFound(f"Secret Version [{name}] not found.")
        return fake_secret, fake_secret.versions[ordinal - 1]

    @staticmethod
    def _check_etag(etag, current):
        if etag and etag != current:
            raise exceptions.FailedPrecondition(ETAG_MISMATCH)

    async def create_secret(self, request=None, *, retry=None, timeout=None, metadata=()):
        request = secretmanager_v1.CreateSecretRequest(request)
        await self._round_trip("create_secret", request, metadata)

        name = f"{request.parent}/secrets/{request.secret_id}"
        if not VALID_SECRET_NAME_RE.match(name):
            raise exceptions.InvalidArgument("Invalid resource field value in the request.")
        if name in self._db:
            raise exceptions.AlreadyExists(f"Secret [{name}] already exists.")

        secret = secretmanager_v1.Secret(request.secret)
        secret.name = name
        secret.etag = _new_etag()
        secret.create_time = self._clock()
        self._db[name] = FakeSecret(secret=secret, metadata=list(metadata))
        return secretmanager_v1.Secret(secret)

    async def get_secret(self, request=None, *, name=None, retry=None, timeout=None, metadata=()):
        request = secretmanager_v1.GetSecretRequest(request or {"name": name})
        await self._round_trip("get_secret", request, metadata)
        return secretmanager_v1.Secret(self._secret(request.name, metadata).secret)

    async def update_secret(self, request=None, *, retry=None, timeout=None, metadata=()):
        request = secretmanager_v1.UpdateSecretRequest(request)
        await self._round_trip("update_secret", request, metadata)

        fake_secret = self._secret(request.secret.name, metadata)
        self._check_etag(request.secret.etag, fake_secret.secret.etag)

        mask = field_mask_pb2.FieldMask(paths=list(request.update_mask.paths))
        mask.MergeMessage(secretmanager_v1.Secret.pb(request.secret),
                          secretmanager_v1.Secret.pb(fake_secret.secret),
                          replace_message_field=True,
                          replace_repeated_field=True)
        fake_secret.secret.etag = _new_etag()
        return secretmanager_v1.Secret(fake_secret.secret)

    async def delete_secret(self, request=None, *, name=None, retry=None, timeout=None, metadata=()):
        request = secretmanager_v1.DeleteSecretRequest(request or {"name": name})
        await self._round_trip("delete_secret", request, metadata)
        fake_secret = self._secret(request.name)
        self._check_etag(request.etag, fake_secret.secret.etag)
        del self._db[request.name]

    async def add_secret_version(self, request=None, *, retry=None, timeout=None, metadata=()):
        request = secretmanager_v1.AddSecretVersionRequest(request)
        await self._round_trip("add_secret_version", request, metadata)

        fake_secret = self._secret(request.parent, metadata)
        data = request.payload.data
        checksummed = "data_crc32c" in request.payload
        if checksummed and request.payload.data_crc32c != _crc32c(data):
            raise exceptions.InvalidArgument("Checksum mismatch.")

        version = secretmanager_v1.SecretVersion(
            name=f"{request.parent}/versions/{len(fake_secret.versions) + 1}",
            state=State.ENABLED,
            etag=_new_etag(),
            create_time=self._clock(),
            client_specified_payload_checksum=checksummed,
        )
        fake_secret.versions.append(FakeSecretVersion(version=version, data=data))
        return secretmanager_v1.SecretVersion(version)

    async def get_secret_version(self, request=None, *, name=None, retry=None, timeout=None,
                                 metadata=()):
        request = secretmanager_v1.GetSecretVersionRequest(request or {"name": name})
        await self._round_trip("get_secret_version", request, metadata)
        _fake_secret, fake_version = self._version(request.name, metadata)
        return secretmanager_v1.SecretVersion(fake_version.version)

    async def access_secret_version(self, request=None, *, name=None, retry=None, timeout=None,
                                    metadata=()):
        request = secretmanager_v1.AccessSecretVersionRequest(request or {"name": name})
        await self._round_trip("access_secret_version", request, metadata)
        _fake_secret, fake_version = self._version(request.name, metadata)
        version = fake_version.version
        if version.state != State.ENABLED:
            raise exceptions.FailedPrecondition(
                f"Secret Version [{version.name}] is in {version.state.name} state.")
        return secretmanager_v1.AccessSecretVersionResponse(
            name=version.name,
            payload=secretmanager_v1.SecretPayload(data=fake_version.data,
                                                   data_crc32c=_crc32c(fake_version.data)),
        )

    async def list_secret_versions(self, request=None, *, parent=None, retry=None, timeout=None,
                                   metadata=()):
        request = secretmanager_v1.ListSecretVersionsRequest(request or {"parent": parent})
        await self._round_trip("list_secret_versions", request, metadata)
        fake_secret = self._secret(request.parent, metadata)

        versions = [secretmanager_v1.SecretVersion(v.version) for v in reversed(fake_secret.versions)]
        if request.filter:
            filter_match = LIST_FILTER_RE.match(request.filter)
            if not filter_match or filter_match.group("state") not in State.__members__:
                raise exceptions.InvalidArgument(f"Unsupported filter {request.filter}")
            state = State[filter_match.group("state")]
            if filter_match.group("op") == "!=":
                versions = [v for v in versions if v.state != state]
            else:
                versions = [v for v in versions if v.state == state]
        return FakeListSecretVersionsPager(versions)

    async def enable_secret_version(self, request=None, *, name=None, retry=None, timeout=None,
                                    metadata=()):
        request = secretmanager_v1.EnableSecretVersionRequest(request or {"name": name})
        await self._round_trip("enable_secret_version", request, metadata)
        return self._set_state(request, State.ENABLED, metadata)

    async def disable_secret_version(self, request=None, *, name=None, retry=None, timeout=None,
                                     metadata=()):
        request = secretmanager_v1.DisableSecretVersionRequest(request or {"name": name})
        await self._round_trip("disable_secret_version", request, metadata)
        return self._set_state(request, State.DISABLED, metadata)

    def _set_state(self, request, state, metadata):
        _fake_secret, fake_version = self._version(request.name, metadata)
        version = fake_version.version
        if version.state == State.DESTROYED:
            raise exceptions.FailedPrecondition("SecretVersion.state is already DESTROYED.")
        self._check_etag(request.etag, version.etag)
        version.state = state
        version.etag = _new_etag()
        return secretmanager_v1.SecretVersion(version)

    async def destroy_secret_version(self, request=None, *, name=None, retry=None, timeout=None,
                                     metadata=()):
        request = secretmanager_v1.DestroySecretVersionRequest(request or {"name": name})
        await self._round_trip("destroy_secret_version", request, metadata)

        fake_secret, fake_version = self._version(request.name, metadata)
        version = fake_version.version
        if version.state == State.DESTROYED:
            raise exceptions.FailedPrecondition("SecretVersion.state is already DESTROYED.")
        if version.scheduled_destroy_time:
            raise exceptions.FailedPrecondition("SecretVersion is already scheduled for DESTRUCTION.")
        self._check_etag(request.etag, version.etag)

        now = self._clock()
        version.etag = _new_etag()
        destroy_ttl = fake_secret.secret.version_destroy_ttl
        if destroy_ttl:
            version.state = State.DISABLED
            version.scheduled_destroy_time = now + destroy_ttl
        else:
            version.state = State.DESTROYED
            version.destroy_time = now
            fake_version.data = b""
        return secretmanager_v1.SecretVersion(version)
