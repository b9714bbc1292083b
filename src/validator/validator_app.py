"""
GKE Node Validator - HTTP service

Receives compute.instances.insert audit log entries (Eventarc / log sink push)
on POST / and hands them to AuditLogHandler.

Run with `python validator_app.py`, or under a WSGI server with `create_app_from_env()`.
"""

import queue
from contextlib import contextmanager
from typing import Iterator

import boto3
import google.auth
import google_auth_httplib2
import httplib2
from botocore.config import Config as BotoConfig
from flask import Flask, Response, request
from googleapiclient import discovery

from audit_handler import AuditLogHandler
from bucket_whitelist import BucketWhitelistProvider, ObjectCache
from instance_validator import InstanceValidator
from template_whitelist import InstanceTemplateWhitelistProvider
from validator_config import Config

GCP_SCOPES = ['https://www.googleapis.com/auth/cloud-platform']
HTTP_TIMEOUT = 30  # seconds, per cloud API call


def build_s3_client(config: Config):
    """S3-compatible client for the whitelist bucket (GCS interoperability by default)."""
    return boto3.client(
        's3',
        endpoint_url=config.storage_endpoint,
        region_name='auto',
        config=BotoConfig(
            connect_timeout=5,
            read_timeout=HTTP_TIMEOUT,
            retries={'max_attempts': 3, 'mode': 'standard'},
            # GCS does not understand the flexible checksum headers
            request_checksum_calculation='when_required',
            response_checksum_validation='when_required',
        ),
    )


def build_gcp_client(service: str, version: str, credentials):
    http = google_auth_httplib2.AuthorizedHttp(credentials, http=httplib2.Http(timeout=HTTP_TIMEOUT))
    return discovery.build(service, version, http=http, cache_discovery=False)


class HandlerPool:
    """
    Reuses AuditLogHandlers across requests.

    googleapiclient resources ride on httplib2, which is not thread-safe, so a
    handler serves one request at a time. Each request takes an idle handler
    and puts it back afterwards; a new one is built only when all are busy.
    The boto3 client and the object cache are shared by all handlers.
    """

    def __init__(self, config: Config, s3_client, object_cache: ObjectCache, credentials):
        self.config = config
        self.s3_client = s3_client
        self.object_cache = object_cache
        self.credentials = credentials
        self._idle = queue.LifoQueue()

    @contextmanager
    def acquire(self) -> Iterator[AuditLogHandler]:
        try:
            handler = self._idle.get_nowait()
        except queue.Empty:
            handler = self.build_handler()
        try:
            yield handler
        finally:
            self._idle.put(handler)

    def idle_count(self) -> int:
        return self._idle.qsize()

    def build_handler(self) -> AuditLogHandler:
        compute_client = build_gcp_client('compute', 'v1', self.credentials)
        container_client = build_gcp_client('container', 'v1', self.credentials)

        validator = InstanceValidator([
            InstanceTemplateWhitelistProvider(container_client, compute_client),
            BucketWhitelistProvider(
                self.s3_client,
                self.config.whitelist_bucket,
                object_prefix=self.config.whitelist_prefix,
                cache=self.object_cache,
                debug=self.config.debug,
            ),
        ])

        return AuditLogHandler(
            compute_client,
            validator,
            project_id=self.config.project_id,
            cluster_ids=self.config.cluster_ids,
            delete_invalid=self.config.delete_invalid,
            fetch_interval=self.config.instance_fetch_interval,
            fetch_timeout=self.config.instance_fetch_timeout,
            debug=self.config.debug,
        )


def create_app(handlers) -> Flask:
    """handlers: anything with an acquire() context manager yielding an AuditLogHandler."""
    app = Flask(__name__)

    @app.route('/', methods=['POST'])
    def handle_audit_log():
        with handlers.acquire() as handler:
            response = handler.handle_audit_log(request.get_data())
        return Response(response['body'], status=response['statusCode'], mimetype='application/json')

    return app


def create_app_from_env(config: Config = None) -> Flask:
    config = config or Config.from_env()
    credentials, _ = google.auth.default(scopes=GCP_SCOPES)
    handlers = HandlerPool(
        config,
        build_s3_client(config),
        ObjectCache(ttl=config.whitelist_cache_ttl),
        credentials,
    )
    return create_app(handlers)


def main():
    config = Config.from_env()
    app = create_app_from_env(config)
    print(f"Listening for requests on port {config.port}")
    app.run(host='0.0.0.0', port=config.port, threaded=True)


if __name__ == '__main__':
    main()
