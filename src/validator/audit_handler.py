"""
Audit log handler

Receives Cloud Audit Log entries for compute.instances.insert, fetches the new
instance, validates its boot metadata and, when enabled, deletes instances whose
scripts contain unknown commands.

Every handled event is answered with 200 unless the request itself is malformed:
the log sink redelivers on errors, and a validator that cannot run must not turn
into a redelivery storm. Only an INVALID verdict can lead to deletion, never an
infrastructure error.
"""

import json
import time
import traceback
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from instance_validator import (
    CAST_CLUSTER_ID_LABEL,
    CAST_MANAGED_BY_LABEL,
    InstanceValidator,
    Outcome,
    ValidationResult,
    describe_instance,
)
from template_whitelist import GCP_API_ERRORS

AUDIT_SERVICE_NAME = 'compute.googleapis.com'
AUDIT_INSERT_METHOD = 'v1.compute.instances.insert'

# GKE Autopilot nodes
AUTOPILOT_INSTANCE_PREFIX = 'gk3-'


@dataclass
class InstanceRequest:
    project: str
    zone: str
    instance: str


def _dict_or_missing(value) -> bool:
    return value is None or isinstance(value, dict)


def is_audit_log_entry(log_entry) -> bool:
    """Shape check of every field read from an audit log entry."""
    if not isinstance(log_entry, dict):
        return False
    proto_payload = log_entry.get('protoPayload')
    resource = log_entry.get('resource')
    if not _dict_or_missing(proto_payload) or not _dict_or_missing(resource):
        return False
    resource_name = (proto_payload or {}).get('resourceName')
    if resource_name is not None and not isinstance(resource_name, str):
        return False
    return _dict_or_missing((resource or {}).get('labels'))


def get_instance_request_from_audit_log(log_entry: Dict) -> Optional[InstanceRequest]:
    """
    resourceName has the form projects/<project>/zones/<zone>/instances/<name>.
    The project is taken from the log resource labels.
    """
    resource_name = (log_entry.get('protoPayload') or {}).get('resourceName') or ''
    parts = resource_name.split('/')
    if len(parts) != 6:
        return None
    project = ((log_entry.get('resource') or {}).get('labels') or {}).get('project_id', '')
    return InstanceRequest(project=project, zone=parts[3], instance=parts[5])


def success_response(data: Dict) -> Dict:
    return {
        'statusCode': 200,
        'body': json.dumps({'success': True, **data}, default=str),
    }


def error_response(status_code: int, message: str) -> Dict:
    return {
        'statusCode': status_code,
        'body': json.dumps({'success': False, 'error': message}),
    }


class AuditLogHandler:
    def __init__(self, compute_client, validator: InstanceValidator, project_id: str,
                 cluster_ids: Sequence[str] = (), delete_invalid: bool = False,
                 fetch_interval: float = 4.0, fetch_timeout: float = 60.0, debug: bool = False):
        self.compute_client = compute_client
        self.validator = validator
        self.project_id = project_id
        self.cluster_ids = set(cluster_ids)
        self.delete_invalid = delete_invalid
        self.fetch_interval = fetch_interval
        self.fetch_timeout = fetch_timeout
        self.debug = debug

    def handle_audit_log(self, payload: bytes) -> Dict:
        if self.debug:
            print(f"Received audit log: {payload!r}")

        try:
            log_entry = json.loads(payload)
        except ValueError as e:
            print(f"Error: failed to parse audit log: {str(e)}")
            return error_response(400, 'Invalid request')
        if not is_audit_log_entry(log_entry):
            print("Error: malformed audit log entry")
            return error_response(400, 'Invalid request')

        proto_payload = log_entry.get('protoPayload') or {}
        if (proto_payload.get('serviceName') != AUDIT_SERVICE_NAME
                or proto_payload.get('methodName') != AUDIT_INSERT_METHOD):
            return success_response({'result': 'ignored'})

        resource_name = proto_payload.get('resourceName') or ''
        try:
            request = get_instance_request_from_audit_log(log_entry)
            if request is None:
                print(f"Error: failed to get instance request from resource name {resource_name!r}")
                return error_response(400, 'Invalid request')
            return self.handle_instance_request(request)
        except Exception as e:
            print(f"Error handling {resource_name}: {str(e)}")
            traceback.print_exc()
            return success_response({'result': 'error'})
        finally:
            print(f"Request processed: {resource_name}")

    def handle_instance_request(self, request: InstanceRequest) -> Dict:
        print(f"Instance request: project={request.project} zone={request.zone} instance={request.instance}")

        # Autopilot system instances show up in the audit log but live outside the user project
        if request.project != self.project_id:
            return success_response({'result': 'skipped', 'reason': 'other project'})
        if request.instance.startswith(AUTOPILOT_INSTANCE_PREFIX):
            return success_response({'result': 'skipped', 'reason': 'autopilot node'})

        try:
            instance = self.fetch_instance(request)
        except GCP_API_ERRORS as e:
            print(f"Error: failed to get instance {request.instance}: {str(e)}")
            return success_response({'result': 'skipped', 'reason': 'instance not found'})

        if not self.consider_instance(instance):
            return success_response({'result': 'skipped', 'reason': 'not monitored'})

        result = self.validator.validate(instance)
        deleted = False
        if result.outcome is Outcome.VALID:
            print(f"Instance {request.instance} is valid")
        elif result.outcome is Outcome.INVALID:
            deleted = self.handle_invalid_instance(request, instance, result)
        else:
            print(f"Error: failed to validate instance, skipping instance: {str(result.error)} "
                  f"{json.dumps(describe_instance(instance))}")

        return success_response({'result': result.outcome.value, 'deleted': deleted})

    def fetch_instance(self, request: InstanceRequest) -> Dict:
        """
        Get the instance, retrying at a constant interval until fetch_timeout.
        A freshly inserted instance may not be readable right away.
        """
        attempts = 1
        if self.fetch_interval > 0:
            attempts += int(self.fetch_timeout // self.fetch_interval)

        for attempt in range(attempts):
            try:
                return self.compute_client.instances().get(
                    project=request.project, zone=request.zone, instance=request.instance
                ).execute()
            except GCP_API_ERRORS as e:
                if attempt + 1 >= attempts:
                    raise
                print(f"Warning: Failed to get instance {request.instance} (attempt {attempt + 1}): {str(e)}")
                time.sleep(self.fetch_interval)

    def consider_instance(self, instance: Dict) -> bool:
        labels = instance.get('labels') or {}
        name = instance.get('name', '')

        if CAST_MANAGED_BY_LABEL not in labels:
            print(f"Instance {name} is not managed by CAST, skip instance")
            return False

        if self.cluster_ids:
            cluster_id = labels.get(CAST_CLUSTER_ID_LABEL)
            if cluster_id is None:
                print(f"Instance {name} is missing CAST cluster id, skip instance")
                return False
            if cluster_id not in self.cluster_ids:
                print(f"Instance {name} is not part of monitored clusters, skip instance")
                return False

        return True

    def handle_invalid_instance(self, request: InstanceRequest, instance: Dict,
                                result: ValidationResult) -> bool:
        details = describe_instance(instance)
        details['metadataKey'] = result.metadata_key
        details['unknownCommands'] = result.unknown_commands
        print(f"Error: instance validation failed {json.dumps(details)}")

        if not self.delete_invalid:
            return False
        try:
            self.delete_instance(request)
        except GCP_API_ERRORS as e:
            print(f"Error: failed to delete instance {request.instance}: {str(e)}")
            return False
        print(f"Instance {request.instance} deleted")
        return True

    def delete_instance(self, request: InstanceRequest):
        self.compute_client.instances().delete(
            project=request.project, zone=request.zone, instance=request.instance
        ).execute()
