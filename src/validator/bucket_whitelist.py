"""
Bucket-backed whitelist provider

Every non-empty object under a prefix of the whitelist bucket is one whitelist
fragment. The bucket is read through the S3-compatible API; for Cloud Storage
that is the interoperability endpoint (https://storage.googleapis.com) with HMAC
credentials.

Object bodies are cached in memory keyed by name + checksum, so an unchanged
object is downloaded at most once per TTL and an edited object is re-read on
the next call.
"""

import base64
import re
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from instance_validator import UpstreamError, WhitelistProvider

MAX_WHITELIST_OBJECT_SIZE = 1048576  # 1MB
DEFAULT_CACHE_TTL = 300  # seconds

_MD5_HEX = re.compile(r'^[0-9a-fA-F]{32}$')


class ObjectCache:
    """
    Thread-safe TTL cache of object bodies.

    Expired entries are never returned; they are dropped when read and swept
    from the whole cache at most once per cleanup interval.
    """

    def __init__(self, ttl: float = DEFAULT_CACHE_TTL, cleanup_interval: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.cleanup_interval = 2 * ttl if cleanup_interval is None else cleanup_interval
        self._clock = clock
        self._entries: Dict[str, Tuple[float, bytes]] = {}
        self._lock = threading.Lock()
        self._last_cleanup = clock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, data = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return data

    def set(self, key: str, data: bytes):
        with self._lock:
            now = self._clock()
            self._entries[key] = (now + self.ttl, data)
            if now - self._last_cleanup >= self.cleanup_interval:
                self._delete_expired(now)

    def delete_expired(self) -> int:
        with self._lock:
            return self._delete_expired(self._clock())

    def _delete_expired(self, now: float) -> int:
        expired = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for k in expired:
            del self._entries[k]
        self._last_cleanup = now
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def object_checksum(obj: Dict) -> str:
    """
    Content checksum of a listed object.

    Single-part uploads carry the hex MD5 as ETag; it is re-encoded as base64,
    the form GCS reports as md5Hash. Any other ETag is used verbatim.
    """
    etag = obj.get('ETag', '').strip('"')
    if _MD5_HEX.match(etag):
        return base64.b64encode(bytes.fromhex(etag)).decode('ascii')
    return etag


def decode_object_body(content: bytes) -> str:
    try:
        return content.decode('utf-8')
    except UnicodeDecodeError:
        return content.decode('latin-1', errors='replace')


class BucketWhitelistProvider(WhitelistProvider):
    name = 'bucket'

    def __init__(self, s3_client, bucket_name: str, object_prefix: str = '',
                 cache: Optional[ObjectCache] = None, max_object_size: int = MAX_WHITELIST_OBJECT_SIZE,
                 debug: bool = False):
        self.s3_client = s3_client
        self.bucket_name = bucket_name
        self.object_prefix = object_prefix
        self.cache = cache if cache is not None else ObjectCache()
        self.max_object_size = max_object_size
        self.debug = debug

    def get_whitelist(self, instance: Dict) -> List[str]:
        whitelist = []
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.object_prefix):
                for obj in page.get('Contents', []):
                    data = self._get_object_data(obj)
                    if data is not None:
                        whitelist.append(decode_object_body(data))
        except (ClientError, BotoCoreError) as e:
            raise UpstreamError(f'list whitelist objects in {self.bucket_name}', e) from e
        return whitelist

    def _get_object_data(self, obj: Dict) -> Optional[bytes]:
        key = obj['Key']
        size = obj.get('Size', 0)
        if size == 0:
            return None
        if size > self.max_object_size:
            print(f"Skipping whitelist object {key}: too large ({size} bytes)")
            return None

        checksum = object_checksum(obj)
        if not checksum:
            # an edit would not change the cache key
            return self._read_object(key)

        cache_key = f"{key}:{checksum}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            if self.debug:
                print(f"Using cached whitelist object {key}")
            return cached

        data = self._read_object(key)
        self.cache.set(cache_key, data)
        return data

    def _read_object(self, key: str) -> bytes:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response['Body'].read()
        except (ClientError, BotoCoreError) as e:
            raise UpstreamError(f'read whitelist object {key}', e) from e
