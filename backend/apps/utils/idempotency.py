# apps/utils/idempotency.py
import functools
import json
import zlib
from django.core.cache import cache
from django.core.serializers.json import DjangoJSONEncoder
from rest_framework.response import Response
from rest_framework import status


def idempotent(timeout=86400, header="Idempotency-Key", required=True, scope=None):
    """
    Decorator to ensure safe retry of non-safe HTTP methods (POST, PATCH).
    Stores COMPRESSED 2xx responses in the cache for 'timeout' seconds.

    `header` names the request header carrying the key. With required=False a
    request without the header simply runs uncached (gateway webhooks only
    sometimes carry an event id). `scope` namespaces keys per endpoint.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(view_instance, request, *args, **kwargs):
            key = request.headers.get(header)

            if not key:
                if not required:
                    return func(view_instance, request, *args, **kwargs)
                return Response(
                    {"error": f"{header} header is required."},
                    status=status.HTTP_400_BAD_REQUEST
                )

            # 1. Security: Prevent DoS via massive keys
            if len(key) > 128:
                return Response(
                    {"error": f"{header} too long (max 128 chars)."},
                    status=status.HTTP_400_BAD_REQUEST
                )

            # 2. Scope key by User to prevent collisions/spoofing
            user = getattr(request, "user", None)
            user_id = user.id if user is not None and user.is_authenticated else "anon"
            namespace = scope or func.__qualname__
            cache_key = f"idempotency:{namespace}:{user_id}:{key}"
            lock_key = f"lock:{cache_key}"

            # 3. Check Cache (Fast Path)
            cached_response = cache.get(cache_key)
            if cached_response:
                try:
                    data_json = zlib.decompress(cached_response["data_compressed"]).decode("utf-8")
                    data = json.loads(data_json)
                    return Response(data, status=cached_response["status"])
                except (ValueError, KeyError, zlib.error):
                    # Cache corruption fallback
                    pass

            # 4. Acquire Lock (Prevent concurrent execution of same key)
            if not cache.add(lock_key, "processing", timeout=30):
                return Response(
                    {"error": "Duplicate request in progress."},
                    status=status.HTTP_409_CONFLICT
                )

            try:
                # 5. Execute Logic
                response = func(view_instance, request, *args, **kwargs)

                # 6. Cache Success Responses Only (2xx)
                if 200 <= response.status_code < 300:
                    response_json = json.dumps(response.data, cls=DjangoJSONEncoder)
                    compressed_data = zlib.compress(response_json.encode("utf-8"))

                    cache.set(cache_key, {
                        "status": response.status_code,
                        "data_compressed": compressed_data
                    }, timeout=timeout)

                return response
            finally:
                # 7. Release Lock
                cache.delete(lock_key)
        return wrapper
    return decorator
