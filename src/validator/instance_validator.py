"""
Instance validator

Decides whether the boot metadata of a GCE instance (configure-sh and user-data)
is fully explained by a whitelist of known-good script fragments. The whitelist
is assembled per call from every configured WhitelistProvider; whatever text is
left after removing all fragments is reported as unknown commands.

Two failure families are kept apart:
- ValidationError: the script contains text the whitelist does not explain.
  Deterministic, safe to act on.
- InstanceValidatorError (and subclasses): the validator could not run, e.g.
  a whitelist source was unreachable or a required label was missing. Never a
  reason to treat the instance as invalid.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from preprocessors import (
    DEFAULT_PREPROCESSORS,
    METADATA_CONFIGURE_SH_KEY,
    METADATA_USER_DATA_KEY,
    RegexReplacement,
    apply_preprocessors,
)

VALIDATED_METADATA_KEYS = (METADATA_CONFIGURE_SH_KEY, METADATA_USER_DATA_KEY)

CLUSTER_NAME_LABEL = 'goog-k8s-cluster-name'
NODE_POOL_NAME_LABEL = 'goog-k8s-node-pool-name'
CAST_MANAGED_BY_LABEL = 'cast-managed-by'
CAST_CLUSTER_ID_LABEL = 'cast-cluster-id'


# =============================================================================
# ERRORS
# =============================================================================

class InstanceValidatorError(Exception):
    """Base class for failures that prevent a verdict."""


class NotFoundError(InstanceValidatorError):
    """A required label, metadata entry or referenced resource is absent."""

    def __init__(self, kind: str, key: str):
        super().__init__(f'{kind} not found: {key}')
        self.kind = kind
        self.key = key


class InvalidSelfLinkError(InstanceValidatorError):
    def __init__(self, kind: str, link: str):
        super().__init__(f'invalid {kind} self link: {link!r}')
        self.kind = kind
        self.link = link


class UpstreamError(InstanceValidatorError):
    """A call to a cloud API failed. May succeed on a later attempt."""

    def __init__(self, step: str, cause: BaseException):
        super().__init__(f'failed to {step}: {cause}')
        self.step = step
        self.cause = cause


class ValidationError(Exception):
    def __init__(self, unknown_commands: str, metadata_key: str):
        super().__init__(f'validation failed: unknown commands in {metadata_key}')
        self.unknown_commands = unknown_commands
        self.metadata_key = metadata_key


# =============================================================================
# RESULT
# =============================================================================

class Outcome(Enum):
    VALID = 'valid'
    INVALID = 'invalid'
    ERROR = 'error'


@dataclass
class ValidationResult:
    outcome: Outcome
    unknown_commands: str = ''
    metadata_key: Optional[str] = None
    error: Optional[InstanceValidatorError] = None

    @property
    def is_valid(self) -> bool:
        return self.outcome is Outcome.VALID

    @property
    def is_invalid(self) -> bool:
        return self.outcome is Outcome.INVALID


# =============================================================================
# INSTANCE HELPERS
# =============================================================================

def find_metadata(metadata: Optional[Dict], key: str) -> str:
    """
    Return the value of a metadata item from a Compute API metadata block
    ({'items': [{'key': ..., 'value': ...}]}). Raises NotFoundError if absent.
    """
    for item in (metadata or {}).get('items', []) or []:
        if item.get('key') == key:
            return item.get('value') or ''
    raise NotFoundError('metadata', key)


def get_label(instance: Dict, label: str) -> str:
    labels = instance.get('labels') or {}
    if label not in labels:
        raise NotFoundError('label', label)
    return labels[label]


# =============================================================================
# VALIDATOR
# =============================================================================

class WhitelistProvider:
    """Source of known-good script fragments for a given instance."""

    name = 'whitelist'

    def get_whitelist(self, instance: Dict) -> List[str]:
        raise NotImplementedError


def remove_fragments(script: str, whitelist: Sequence[str]) -> str:
    """
    Delete every occurrence of every fragment, in whitelist order.

    A fragment that is itself a substring of a later fragment can break the
    later one apart, leaving part of it behind as residue.
    """
    for fragment in whitelist:
        if fragment:
            script = script.replace(fragment, '')
    return script


class InstanceValidator:
    def __init__(
        self,
        providers: Sequence[WhitelistProvider],
        preprocessors: Optional[Mapping[str, Sequence[RegexReplacement]]] = None,
    ):
        self.providers = list(providers)
        self.preprocessors = DEFAULT_PREPROCESSORS if preprocessors is None else preprocessors

    def get_whitelist(self, instance: Dict) -> List[str]:
        whitelist: List[str] = []
        for provider in self.providers:
            whitelist.extend(provider.get_whitelist(instance))
        return whitelist

    def check_script(self, whitelist: Sequence[str], key: str, script: str) -> None:
        script = apply_preprocessors(script, self.preprocessors.get(key, ()))
        residue = remove_fragments(script, whitelist)
        if residue.strip():
            raise ValidationError(unknown_commands=residue, metadata_key=key)

    def check(self, instance: Dict) -> None:
        """
        Validate an instance, raising on the first problem.

        Raises:
            InstanceValidatorError: whitelist could not be built or the instance
                lacks a validated metadata key.
            ValidationError: a script has content the whitelist does not cover.
        """
        whitelist = self.get_whitelist(instance)
        metadata = instance.get('metadata')
        for key in VALIDATED_METADATA_KEYS:
            script = find_metadata(metadata, key)
            self.check_script(whitelist, key, script)

    def validate(self, instance: Dict) -> ValidationResult:
        try:
            self.check(instance)
        except ValidationError as e:
            return ValidationResult(
                outcome=Outcome.INVALID,
                unknown_commands=e.unknown_commands,
                metadata_key=e.metadata_key,
            )
        except InstanceValidatorError as e:
            return ValidationResult(outcome=Outcome.ERROR, error=e)
        return ValidationResult(outcome=Outcome.VALID)


def describe_instance(instance: Dict) -> Dict[str, Any]:
    """Identifying fields attached to every log line about an instance."""
    labels = instance.get('labels') or {}
    return {
        'instanceName': instance.get('name', ''),
        'instanceSelfLink': instance.get('selfLink', ''),
        'clusterName': labels.get(CLUSTER_NAME_LABEL, ''),
        'castClusterID': labels.get(CAST_CLUSTER_ID_LABEL, ''),
    }
