"""
Shared fixtures: GCE instance / audit log builders and fake whitelist providers.
"""

import json
import os
import sys
from contextlib import contextmanager
from typing import Dict, List, Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src', 'validator'))

from instance_validator import WhitelistProvider  # noqa: E402

PROJECT_ID = 'my-project'
ZONE = 'us-central1-a'
CLUSTER_NAME = 'prod-cluster'
NODE_POOL_NAME = 'default-pool'
CAST_CLUSTER_ID = '7f2b9c1e-cast'


def make_metadata(items: Dict[str, str]) -> Dict:
    return {'items': [{'key': k, 'value': v} for k, v in items.items()]}


class StaticWhitelistProvider(WhitelistProvider):
    """Returns a fixed whitelist and counts calls."""

    name = 'static'

    def __init__(self, fragments: List[str], error: Optional[Exception] = None):
        self.fragments = list(fragments)
        self.error = error
        self.calls = 0

    def get_whitelist(self, instance: Dict) -> List[str]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.fragments)


class SingleHandlerPool:
    """Hands out the same handler for every request."""

    def __init__(self, handler):
        self.handler = handler

    @contextmanager
    def acquire(self):
        yield self.handler


@pytest.fixture
def static_provider():
    return StaticWhitelistProvider


@pytest.fixture
def single_handler_pool():
    return SingleHandlerPool


@pytest.fixture
def make_instance():
    """
    Returns a factory for Compute API instance dicts. Pass configure_sh or
    user_data as None to leave the metadata key out.
    """
    def _make(configure_sh: Optional[str] = '', user_data: Optional[str] = '',
              name: str = 'gke-prod-cluster-default-pool-1a2b3c4d-x9z8',
              labels: Optional[Dict[str, str]] = None, zone: str = ZONE,
              project: str = PROJECT_ID) -> Dict:
        items = {}
        if configure_sh is not None:
            items['configure-sh'] = configure_sh
        if user_data is not None:
            items['user-data'] = user_data
        if labels is None:
            labels = {
                'goog-k8s-cluster-name': CLUSTER_NAME,
                'goog-k8s-node-pool-name': NODE_POOL_NAME,
                'cast-managed-by': 'cast-ai',
                'cast-cluster-id': CAST_CLUSTER_ID,
            }
        return {
            'name': name,
            'selfLink': f'https://www.googleapis.com/compute/v1/projects/{project}/zones/{zone}/instances/{name}',
            'labels': labels,
            'metadata': make_metadata(items),
        }

    return _make


@pytest.fixture
def make_audit_log():
    """Returns a factory for raw compute.instances.insert audit log bodies."""
    def _make(instance_name: str = 'gke-prod-cluster-default-pool-1a2b3c4d-x9z8', project: str = PROJECT_ID,
              zone: str = ZONE, service_name: str = 'compute.googleapis.com',
              method_name: str = 'v1.compute.instances.insert', resource_name: Optional[str] = None) -> bytes:
        if resource_name is None:
            resource_name = f'projects/{project}/zones/{zone}/instances/{instance_name}'
        return json.dumps({
            'protoPayload': {
                'serviceName': service_name,
                'methodName': method_name,
                'resourceName': resource_name,
            },
            'resource': {
                'type': 'gce_instance',
                'labels': {'project_id': project, 'zone': zone},
            },
        }).encode('utf-8')

    return _make
