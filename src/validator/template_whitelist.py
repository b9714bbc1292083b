"""
Instance template whitelist provider

Whitelists the configure-sh and user-data that the node pool's current instance
template would give a new node. The template is found by walking:

    instance labels -> GKE node pool -> zonal instance group manager -> instance template

so that a legitimate template rollout is picked up without redeploying anything.
"""

import re
from typing import Dict, List, Sequence, Tuple

from google.auth.exceptions import GoogleAuthError
from googleapiclient.errors import HttpError
from httplib2 import HttpLib2Error

from instance_validator import (
    CLUSTER_NAME_LABEL,
    METADATA_CONFIGURE_SH_KEY,
    METADATA_USER_DATA_KEY,
    NODE_POOL_NAME_LABEL,
    InvalidSelfLinkError,
    NotFoundError,
    UpstreamError,
    WhitelistProvider,
    find_metadata,
    get_label,
)

_COMPUTE_PREFIX = r'https://www\.googleapis\.com/compute/(?:v1|beta)/projects/(.+?)'

INSTANCE_SELF_LINK_RE = re.compile(_COMPUTE_PREFIX + r'/zones/(.+?)/instances/(.+)')
INSTANCE_GROUP_MANAGER_SELF_LINK_RE = re.compile(_COMPUTE_PREFIX + r'/zones/(.+?)/instanceGroupManagers/(.+)')
REGION_INSTANCE_TEMPLATE_SELF_LINK_RE = re.compile(_COMPUTE_PREFIX + r'/regions/(.+?)/instanceTemplates/(.+)')
GLOBAL_INSTANCE_TEMPLATE_SELF_LINK_RE = re.compile(_COMPUTE_PREFIX + r'/global/instanceTemplates/(.+)')

# Transport and auth failures of googleapiclient calls. OSError covers socket timeouts.
GCP_API_ERRORS = (HttpError, GoogleAuthError, HttpLib2Error, OSError)


def _parse_self_link(regexp: re.Pattern, kind: str, link: str) -> Tuple[str, ...]:
    match = regexp.search(link or '')
    if not match:
        raise InvalidSelfLinkError(kind, link)
    return match.groups()


def parse_instance_self_link(link: str) -> Tuple[str, str, str]:
    """Returns (project, zone, instance name)."""
    return _parse_self_link(INSTANCE_SELF_LINK_RE, 'instance', link)


def parse_instance_group_manager_self_link(link: str) -> Tuple[str, str, str]:
    """Returns (project, zone, instance group manager name)."""
    return _parse_self_link(INSTANCE_GROUP_MANAGER_SELF_LINK_RE, 'instance group manager', link)


def parse_location_from_zone(zone: str) -> str:
    # us-central1-a -> us-central1
    return zone[:-2]


def find_instance_group_url_for_zone(instance_group_urls: Sequence[str], zone: str) -> str:
    for url in instance_group_urls:
        _, url_zone, _ = parse_instance_group_manager_self_link(url)
        if url_zone == zone:
            return url
    raise NotFoundError('instance group manager for zone', zone)


class InstanceTemplateWhitelistProvider(WhitelistProvider):
    """
    Args:
        container_client: googleapiclient resource for container v1
        compute_client: googleapiclient resource for compute v1
    """

    name = 'instance-template'

    def __init__(self, container_client, compute_client):
        self.container_client = container_client
        self.compute_client = compute_client

    def get_whitelist(self, instance: Dict) -> List[str]:
        template = self.get_instance_template(instance)
        metadata = (template.get('properties') or {}).get('metadata')
        configure_sh = find_metadata(metadata, METADATA_CONFIGURE_SH_KEY)
        user_data = find_metadata(metadata, METADATA_USER_DATA_KEY)
        return [configure_sh, user_data]

    def get_instance_template(self, instance: Dict) -> Dict:
        cluster_name = get_label(instance, CLUSTER_NAME_LABEL)
        node_pool_name = get_label(instance, NODE_POOL_NAME_LABEL)

        project_id, zone, _ = parse_instance_self_link(instance.get('selfLink', ''))
        location = parse_location_from_zone(zone)

        node_pool = self.get_node_pool(
            f'projects/{project_id}/locations/{location}/clusters/{cluster_name}/nodePools/{node_pool_name}'
        )
        instance_group_url = find_instance_group_url_for_zone(node_pool.get('instanceGroupUrls', []), zone)
        igm_project, igm_zone, igm_name = parse_instance_group_manager_self_link(instance_group_url)

        igm = self.get_instance_group_manager(igm_project, igm_zone, igm_name)
        return self.get_instance_template_by_link(igm.get('instanceTemplate', ''))

    def get_node_pool(self, name: str) -> Dict:
        try:
            return self.container_client.projects().locations().clusters().nodePools().get(
                name=name
            ).execute()
        except GCP_API_ERRORS as e:
            raise UpstreamError(f'get node pool {name}', e) from e

    def get_instance_group_manager(self, project: str, zone: str, name: str) -> Dict:
        try:
            return self.compute_client.instanceGroupManagers().get(
                project=project, zone=zone, instanceGroupManager=name
            ).execute()
        except GCP_API_ERRORS as e:
            raise UpstreamError(f'get instance group manager {name}', e) from e

    def get_instance_template_by_link(self, link: str) -> Dict:
        match = REGION_INSTANCE_TEMPLATE_SELF_LINK_RE.search(link or '')
        if match:
            project, region, name = match.groups()
            request = self.compute_client.regionInstanceTemplates().get(
                project=project, region=region, instanceTemplate=name
            )
        else:
            project, name = _parse_self_link(GLOBAL_INSTANCE_TEMPLATE_SELF_LINK_RE, 'instance template', link)
            request = self.compute_client.instanceTemplates().get(project=project, instanceTemplate=name)

        try:
            return request.execute()
        except GCP_API_ERRORS as e:
            raise UpstreamError(f'get instance template {name}', e) from e
