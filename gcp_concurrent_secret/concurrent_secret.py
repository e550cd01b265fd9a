# -*- coding: utf-8 -*-
"""Optimistic locking of a single Secret Manager secret.

Secret Manager has no lock service. A secret is "locked" by writing a
``locked_at`` annotation with an update conditioned on the etag that was just
read. Only one of several concurrent writers can win that update, the others
fail with ``FailedPrecondition``. Everyone agrees to respect a ``locked_at``
annotation for ``grace_period`` seconds, after which it is treated as left
behind by a crashed holder.

A rotation is then lock, add a new version, destroy the previous latest
version, stamp ``updated_at`` and unlock.
"""

import inspect
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import google.auth
import google_crc32c
from dateutil import parser
from google.api_core import exceptions
from google.api_core.client_options import ClientOptions
from google.cloud import secretmanager, secretmanager_v1
from google.protobuf import field_mask_pb2

from .exceptions import SecretChecksumError, SecretLockedError, SecretValueTypeError
from .inflight import InFlightRequests

LOCKED_AT = "locked_at"
UPDATED_AT = "updated_at"

VERSION_SUFFIX_RE = re.compile(r"/versions/(?:[0-9]+|latest)$")


def _utcnow():
    return datetime.now(timezone.utc)


def format_timestamp(value):
    """ISO-8601 in UTC with millisecond precision and a Z suffix, e.g. 2024-03-01T10:00:00.000Z"""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value):
    if not value:
        return None
    try:
        parsed = parser.isoparse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def version_ordinal(version_name):
    return int(version_name.rsplit("/", 1)[-1])


def create_client(client_options=None, _credentials_callback=None):
    """Build an async Secret Manager client.

    Args:
        client_options (dict | ClientOptions, optional): passed through to the client.
        _credentials_callback (callable, optional): A function that returns a
            tuple of (credentials, project_id). If not provided,
            `google.auth.default()` is used.
    """
    if _credentials_callback is not None:
        credentials, _project_id = _credentials_callback()
    else:
        credentials, _project_id = google.auth.default()
    return secretmanager.SecretManagerServiceAsyncClient(credentials=credentials,
                                                         client_options=client_options)


@dataclass
class SecretAnnotations:
    """Typed view of the annotations the locking protocol reserves.

    Annotations not used by the protocol are kept untouched in ``other``.
    A reserved value that cannot be parsed as a timestamp reads as None but
    stays in ``other`` as written, until a typed value replaces it.
    """
    locked_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    other: dict = field(default_factory=dict)

    @classmethod
    def from_secret(cls, secret):
        annotations = dict(secret.annotations)
        typed = {}
        for key in (LOCKED_AT, UPDATED_AT):
            typed[key] = parse_timestamp(annotations.get(key))
            if typed[key] is not None or key not in annotations:
                annotations.pop(key, None)
        return cls(locked_at=typed[LOCKED_AT], updated_at=typed[UPDATED_AT], other=annotations)

    def to_dict(self):
        annotations = dict(self.other)
        if self.locked_at is not None:
            annotations[LOCKED_AT] = format_timestamp(self.locked_at)
        if self.updated_at is not None:
            annotations[UPDATED_AT] = format_timestamp(self.updated_at)
        return annotations


class ConcurrentSecret:
    """Coordinates concurrent rotation of one secret across processes.

    Attributes:
        name (str): secret resource name, e.g. ``projects/1234/secrets/my-secret``.
        grace_period (timedelta): how long a ``locked_at`` annotation is honoured.
        call_options (dict | callable): keyword arguments added to every client
            call (``metadata``, ``timeout``, ``retry``), or a zero argument
            function returning them, invoked per call.
        locked_secret (secretmanager_v1.Secret): the secret as returned by the
            update that locked it, None while this instance holds no lock.
        secret_version (secretmanager_v1.SecretVersion): version added by the
            last successful rotation of this instance.
    """

    def __init__(self,
                 name,
                 client=None,
                 grace_period=60.0,
                 call_options=None,
                 _credentials_callback=None,
                 _clock=None):
        """
        Args:
            name (str): secret resource name. A trailing ``/versions/<n|latest>`` is ignored.
            client: an async Secret Manager client, or client options used to build one.
            grace_period (float): lock grace period in seconds, a lock older than this
                is considered abandoned.
            call_options (dict | callable, optional): per call client keyword arguments.
            _credentials_callback (callable, optional): returns (credentials, project_id)
                when a client has to be built.
            _clock (callable, optional): returns the current aware UTC datetime.
        """
        assert grace_period >= 0.0, "Lock grace period cannot be negative"

        # a malformed name is left for Secret Manager to reject with InvalidArgument or NotFound
        self._name = VERSION_SUFFIX_RE.sub("", name)
        self._client = None
        self._client_options = None
        if client is None or isinstance(client, (dict, ClientOptions)):
            self._client_options = client
        else:
            self._client = client
        self._credentials_callback = _credentials_callback
        self._clock = _clock or _utcnow
        self.grace_period = timedelta(seconds=grace_period)
        self.call_options = call_options
        self.locked_secret = None
        self.secret_version = None
        self._in_flight = InFlightRequests()

    @property
    def name(self):
        return self._name

    @property
    def latest_version_name(self):
        return f"{self._name}/versions/latest"

    @property
    def client(self):
        if self._client is None:
            self._client = create_client(self._client_options, self._credentials_callback)
        return self._client

    @property
    def locked(self):
        return self.locked_secret is not None

    async def _call(self, method, request):
        call_options = self.call_options
        if callable(call_options):
            call_options = call_options()
        return await getattr(self.client, method)(request=request, **(call_options or {}))

    async def get_secret(self):
        """Read the secret metadata, raises NotFound if the secret does not exist."""
        return await self._call("get_secret", {"name": self._name})

    def _prepare(self):
        return self._in_flight.run("get_secret", self.get_secret)

    async def get_latest_version(self, throw_if_missing=False):
        """Metadata of the latest version, None if the secret has no versions."""
        try:
            return await self._call("get_secret_version", {"name": self.latest_version_name})
        except exceptions.NotFound:
            if throw_if_missing:
                raise
            return None

    async def get_latest_data(self, throw_if_missing=False):
        """Name and payload of the latest version, None if the secret has no versions."""
        try:
            return await self.access_version(self.latest_version_name)
        except exceptions.NotFound:
            if throw_if_missing:
                raise
            return None

    async def get_latest_payload(self, throw_if_missing=False):
        response = await self.get_latest_data(throw_if_missing)
        if response is None:
            return None
        return response.payload.data

    async def access_version(self, version_name):
        response = await self._call("access_secret_version", {"name": version_name})
        if "data_crc32c" in response.payload:
            crc32c = google_crc32c.Checksum()
            crc32c.update(response.payload.data)
            if response.payload.data_crc32c != int(crc32c.hexdigest(), 16):
                raise SecretChecksumError(response.name)
        return response

    async def add_version(self, payload):
        # Passing a checksum lets the service reject a payload corrupted in transit.
        crc32c = google_crc32c.Checksum()
        crc32c.update(payload)
        return await self._call("add_secret_version", {
            "parent": self._name,
            "payload": {"data": payload, "data_crc32c": int(crc32c.hexdigest(), 16)},
        })

    async def _update_annotations(self, secret, annotations):
        return await self._call("update_secret", {
            "secret": {
                "name": secret.name,
                "etag": secret.etag,
                "annotations": annotations.to_dict(),
            },
            "update_mask": field_mask_pb2.FieldMask(paths=["annotations"]),
        })

    async def acquire(self):
        """Lock the secret by rotating its etag with a ``locked_at`` annotation.

        Returns:
            secretmanager_v1.Secret: the locked secret.

        Raises:
            SecretLockedError: another holder locked it less than ``grace_period`` ago.
            google.api_core.exceptions.FailedPrecondition: the secret changed between
                read and write, the whole cycle should be retried.
        """
        if self.locked_secret is not None:
            return self.locked_secret
        return await self._in_flight.run("acquire", self._acquire)

    async def _acquire(self):
        secret = await self._prepare()
        annotations = SecretAnnotations.from_secret(secret)
        now = self._clock()

        if annotations.locked_at is not None and now <= annotations.locked_at + self.grace_period:
            raise SecretLockedError(self._name, annotations.locked_at)

        if annotations.locked_at is not None:
            logging.getLogger(__name__).info(
                f"Taking over lock on {self._name} abandoned since {format_timestamp(annotations.locked_at)}")

        annotations.locked_at = now
        locked_secret = await self._update_annotations(secret, annotations)
        self.locked_secret = locked_secret
        logging.getLogger(__name__).debug(f"Locked {self._name} at {format_timestamp(now)}")
        return locked_secret

    async def release(self):
        """Remove the ``locked_at`` annotation written by :meth:`acquire`.

        Does nothing if this instance holds no lock. Local lock state is cleared
        before writing, so if the write fails (the secret was changed while locked)
        the error propagates but the instance is unlocked anyway and the remote
        annotation expires with the grace period.
        """
        if self.locked_secret is None:
            return

        secret = self.locked_secret
        self.locked_secret = None
        self._in_flight.forget()

        annotations = SecretAnnotations.from_secret(secret)
        annotations.locked_at = None
        await self._update_annotations(secret, annotations)
        logging.getLogger(__name__).debug(f"Unlocked {self._name}")

    async def rotate(self, producer, *args, encoding="UTF-8"):
        """
        Lock, add a new version produced by producer, retire the previous latest and unlock.

        :type producer: callable
        :param producer: function (sync or async) returning the new secret as str or bytes,
                         only called once the lock is held

        :param args: passed to producer

        :type encoding: str
        :param encoding: character encoding of a str returned by producer, default is UTF-8
        :return the value returned by producer
        """
        secret_value, _version = await self.rotate_version(producer, *args, encoding=encoding)
        return secret_value

    async def rotate_version(self, producer, *args, encoding="UTF-8"):
        """Same as :meth:`rotate` but returns a tuple of (producer value, new SecretVersion)."""
        locked_secret = await self.acquire()

        try:
            latest_version = await self.get_latest_version()

            secret_value = producer(*args)
            if inspect.isawaitable(secret_value):
                secret_value = await secret_value

            if isinstance(secret_value, str):
                payload = secret_value.encode(encoding)
            elif isinstance(secret_value, (bytes, bytearray)):
                payload = bytes(secret_value)
            else:
                raise SecretValueTypeError(self._name, secret_value)

            new_version = await self.add_version(payload)

            if (latest_version is not None
                    and latest_version.state != secretmanager_v1.SecretVersion.State.DESTROYED
                    and not latest_version.scheduled_destroy_time):
                # Subject to the secret's version_destroy_ttl, may only disable it for now
                await self._call("destroy_secret_version", {"name": latest_version.name})

            annotations = SecretAnnotations.from_secret(locked_secret)
            annotations.updated_at = self._clock()
            # release() must use the etag of this write
            self.locked_secret = await self._update_annotations(locked_secret, annotations)
        except BaseException as rotate_error:
            try:
                await self.release()
            except Exception as release_error:
                logging.getLogger(__name__).warning(
                    f"Unlocking {self._name} failed after failed rotation ({rotate_error!r}): "
                    f"{release_error!r}")
            raise

        await self.release()

        self.secret_version = new_version
        logging.getLogger(__name__).info(f"Rotated {self._name} to {new_version.name}")
        return secret_value, new_version

    async def __aenter__(self):
        return await self.acquire()

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            await self.release()
            return
        try:
            await self.release()
        except Exception as release_error:
            logging.getLogger(__name__).warning(
                f"Unlocking {self._name} failed while handling {exc!r}: {release_error!r}")
