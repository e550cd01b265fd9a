"""Decorators for use with the secrets cache """
import functools
import inspect
import json

from gcp_concurrent_secret.exceptions import NoActiveSecretVersion


async def _cached_value(cache, secret_id, encoding=None):
    if encoding is not None and secret_id not in cache.cache:
        cache.set(secret_id, encoding=encoding)
    cached_secret = await cache.get(secret_id)
    if cached_secret is None or cached_secret.value is None:
        raise NoActiveSecretVersion(secret_id)
    return cached_secret.value


class InjectSecretString:
    """Decorator injecting the cached value of a secret into a coroutine function"""

    def __init__(self, cache, secret_id, encoding=None):
        """
        Constructs a decorator to inject a single non-keyworded argument from a cached secret for a given function.

        :type cache: gcp_concurrent_secret.SecretsCache
        :param cache: The cache the secret is read through, it is read on every call so rotations are seen

        :type secret_id: str
        :param secret_id: The secret identifier

        :type encoding: string
        :param encoding: Character encoding of the secret, used to register it with the cache
                         when the cache does not hold it yet, default is UTF-8
        """

        self.cache = cache
        self.secret_id = secret_id
        self.encoding = encoding

    def __call__(self, func):
        """
        Return a coroutine function with cached secret injected as first argument.

        :type func: object
        :param func: The function for injecting a single non-keyworded argument too.
        :return The function with the injected argument.
        """

        @functools.wraps(func)
        async def _wrapped_func(*args, **kwargs):
            """
            Internal function to execute wrapped function
            """
            secret = await _cached_value(self.cache, self.secret_id, self.encoding)
            result = func(secret, *args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        return _wrapped_func


class InjectKeywordedSecretString:
    """Decorator injecting keyword arguments from a cached JSON secret"""

    def __init__(self, cache, secret_id, **kwargs):
        """
        Construct a decorator to inject a variable list of keyword arguments to a given function with resolved values
        from a cached secret.

        :type kwargs: dict
        :param kwargs: dictionary mapping original keyword argument of wrapped function to JSON-encoded secret key

        :type secret_id: str
        :param secret_id: The secret identifier

        :type cache: gcp_concurrent_secret.SecretsCache
        """

        self.cache = cache
        self.kwarg_map = kwargs
        self.secret_id = secret_id

    def __call__(self, func):
        """
        Return a coroutine function with injected keyword arguments from a cached secret.

        :type func: object
        :param func: function for injecting keyword arguments.
        :return The original function with injected keyword arguments
        """

        @functools.wraps(func)
        async def _wrapped_func(*args, **kwargs):
            """
            Internal function to execute wrapped function
            """
            try:
                secret = json.loads(await _cached_value(self.cache, self.secret_id))
            except json.decoder.JSONDecodeError:
                raise RuntimeError('Cached secret is not valid JSON') from None

            resolved_kwargs = dict()
            for orig_kwarg in self.kwarg_map:
                secret_key = self.kwarg_map[orig_kwarg]
                try:
                    resolved_kwargs[orig_kwarg] = secret[secret_key]
                except KeyError:
                    raise RuntimeError('Cached secret does not contain key {0}'.format(secret_key)) from None

            result = func(*args, **resolved_kwargs, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        return _wrapped_func
