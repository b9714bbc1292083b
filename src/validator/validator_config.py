"""
Service configuration, read from APP_* environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from bucket_whitelist import DEFAULT_CACHE_TTL

ENV_PREFIX = 'APP_'
DEFAULT_STORAGE_ENDPOINT = 'https://storage.googleapis.com'
DEFAULT_PORT = 8080


class ConfigError(ValueError):
    pass


@dataclass
class Config:
    project_id: str
    whitelist_bucket: str
    whitelist_prefix: str = ''
    whitelist_cache_ttl: int = DEFAULT_CACHE_TTL
    storage_endpoint: str = DEFAULT_STORAGE_ENDPOINT
    delete_invalid: bool = False
    cluster_ids: List[str] = field(default_factory=list)
    port: int = DEFAULT_PORT
    instance_fetch_interval: float = 4.0
    instance_fetch_timeout: float = 60.0
    debug: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Config':
        env = os.environ if environ is None else environ

        def get(name: str, default: str = '') -> str:
            return env.get(ENV_PREFIX + name, default).strip()

        def required(name: str) -> str:
            value = get(name)
            if not value:
                raise ConfigError(f'{ENV_PREFIX}{name} is required')
            return value

        def number(name: str, default, convert):
            raw = get(name)
            if not raw:
                return default
            try:
                return convert(raw)
            except ValueError:
                raise ConfigError(f'{ENV_PREFIX}{name} must be a number, got {raw!r}')

        return cls(
            project_id=required('PROJECT_ID'),
            whitelist_bucket=required('WHITELIST_BUCKET'),
            whitelist_prefix=get('WHITELIST_PREFIX'),
            whitelist_cache_ttl=number('WHITELIST_CACHE_TTL', DEFAULT_CACHE_TTL, int),
            storage_endpoint=get('STORAGE_ENDPOINT') or DEFAULT_STORAGE_ENDPOINT,
            delete_invalid=parse_bool(get('DELETE_INVALID')),
            cluster_ids=parse_list(get('CLUSTER_IDS')),
            port=number('PORT', None, int) or _runtime_port(env),
            instance_fetch_interval=number('INSTANCE_FETCH_INTERVAL', 4.0, float),
            instance_fetch_timeout=number('INSTANCE_FETCH_TIMEOUT', 60.0, float),
            debug=parse_bool(get('DEBUG')),
        )


def _runtime_port(env: Mapping[str, str]) -> int:
    # Cloud Run injects PORT
    raw = env.get('PORT') or str(DEFAULT_PORT)
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f'PORT must be a number, got {raw!r}')


def parse_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def parse_list(value: str) -> List[str]:
    """Comma-separated list; whitespace and empty segments are dropped."""
    return [v.strip() for v in value.split(',') if v.strip()]
